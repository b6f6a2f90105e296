"""TodoBridge - sync dashboard tasks with Microsoft To Do."""

from todobridge.version import get_version

__version__ = get_version()

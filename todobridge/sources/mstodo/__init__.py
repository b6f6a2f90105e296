"""Microsoft To Do (Microsoft Graph) source."""

"""Content store and profile directory server for the messaging key system."""

"""Core types, configuration and exceptions shared by every layer."""

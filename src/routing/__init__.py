"""Venue/chain routing for parsed intents."""

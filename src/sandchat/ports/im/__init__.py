"""Chat platform adapters and the bridge that feeds them into the message store."""

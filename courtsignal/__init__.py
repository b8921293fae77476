"""courtsignal backend package."""

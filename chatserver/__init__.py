"""Storage and relay server for end-to-end encrypted chat."""

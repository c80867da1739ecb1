"""Recording archive search, download and replay."""

"""one-X agent endpoint and UCID monitor clients."""

"""Services — store-backed request admission (rate limiting)."""

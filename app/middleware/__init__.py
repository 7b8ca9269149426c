"""Request middleware: logging, timing, JWT identity, idempotency, rate limits."""

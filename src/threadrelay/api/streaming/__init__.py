"""Server-sent event encoding, per-response channels and the live session registry."""

"""Request context propagation and exception-to-response mapping."""

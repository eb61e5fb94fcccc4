"""
Thread Relay - Streaming chat relay for assistant threads
=========================================================

FastAPI backend that bridges chat clients to an assistant thread provider,
streams replies as server-sent events and keeps a durable, gap-free message
log per conversation in PostgreSQL.

Key Features:
    - **SSE Streaming**: ``start``, ``json`` metadata, token frames, ``end``/``error``
    - **Durable Writes**: Per-conversation sequence counters assigned under row locks
    - **Resilient Batching**: Assistant deltas buffered by size/age with bounded retries
    - **Lifecycle Control**: Client disconnects cancel runs and drain buffered output
    - **Image Uploads**: Validated attachments stored in S3-compatible buckets
    - **Enterprise Logging**: Structured JSON logs with request correlation

Modules:
    api: FastAPI app, routes, middleware, services and SSE streaming
    core: Settings, constants and localized messages
    integrations: Thread provider protocol and its OpenAI implementation
    models: Pydantic request/response models and error codes
    utils: Logging, database helpers, metrics and date formatting
"""

__version__ = "1.0.0"

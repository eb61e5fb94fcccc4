"""
Services Layer - Conversation, persistence and streaming orchestration
======================================================================

Modules:
    batcher: Keyed buffer that flushes assistant deltas by size or age with retries
    message_store: PostgreSQL conversation log with per-conversation sequence counters
    conversation_service: Conversation creation, ownership checks and message submission
    stream_session: One streamed reply, from provider subscription to final drain
    object_store: Image validation and upload to S3-compatible storage
"""

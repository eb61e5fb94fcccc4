"""
Integrations Module - External System Integrations
===================================================

Modules:
    thread_provider: Provider protocol (create thread, append message, stream
        replies) and the OpenAI Assistants implementation
"""

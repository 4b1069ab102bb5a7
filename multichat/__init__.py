# flake8: noqa
"""
Backend package for the multi-model Ollama chat.

Modules:
    settings:     Configuration loading and persistence helpers.
    llm:          Ollama HTTP client (model listing, chat, streaming, pull/delete).
    conversation: Participant, message and session value types.
    prompts:      Roles, chat configuration, attachments, mentions and round-robin prompts.
    hosts:        Host registry with connection status and model catalog.
    scanner:      Local network discovery of Ollama hosts.
    tasks:        Bounded outgoing request queue.
    storage:      Persistent chat sessions.
    orchestrator: Broadcast fan-out and the autonomous round-robin dialogue.
    main:         FastAPI application wiring everything together.
"""

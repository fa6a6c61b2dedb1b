"""
DM Pilot - Instagram DM and comment auto-reply core.

Receives platform webhooks, decides whether an inbound message may be
answered by machine or must be escalated to a human, sends the reply, and
keeps a CRM-like contact table enriched by periodic conversation analysis.

Architecture:
    Inbound path:
    webhook (api) -> WebhookProcessor -> HRN gate -> trigger match
        -> reply generation -> delivery -> action logs / dead letter

    Background path (worker):
    hourly due-sync scan -> ContactSyncPipeline
    daily token refresh  -> TokenManager
    dead letter retries  -> DeadLetterProcessor

Modules:
    main: Orchestrator that wires all components
    api: FastAPI webhook endpoints
    webhook_processor: Per-event state machine
    hrn: Human Response Needed classifier
    matching: Trigger-matching engine
    sync: Contact/conversation sync pipeline
    token_manager: Access token lifecycle
    graph_client / instagram: Platform API client and operations
    ai_client: Generation service client
    database / database_sqlite: Supabase store and SQLite fallback

Entry Point:
    python -m dm_pilot.main
"""

__version__ = "0.1.0"

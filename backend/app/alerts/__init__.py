"""
alerts — Campus emergency alert intake, storage and notification.

Sub-modules:
    channels/       — Best-effort delivery backends (admin email)
    abuse_guard     — Sliding-window rate limits, device fingerprints
    store           — Durable alert records and atomic status updates
    fanout          — Live push to connected admin / police dashboards
    lifecycle       — Intake flow and operator-driven transitions
    models          — Data structures shared across the system
"""

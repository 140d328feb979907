"""
channels — Best-effort delivery backends.

Each channel exposes:
    notify(alert) → DeliveryAttempt

Channels never raise; failures are reported in the returned attempt and
logged by the caller.
"""

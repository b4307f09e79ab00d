"""
notifications — Proximity/subscription-based multi-channel dispatch.

Sub-modules:
    channels/    — Per-channel delivery backends (mobile push, web push)
    directory    — Recipients, preferences and channel registrations
    resolver     — Who should hear about a warning
    messages     — Per-event notification content
    ledger       — Settled deliveries, for replay idempotency
    coordinator  — One dispatch event → one delivery report
    feed         — Live warning feed for streaming clients
    models       — Data structures shared across the system
"""

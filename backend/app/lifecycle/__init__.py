"""
lifecycle — Warning aggregate, validated store and lifecycle controller.

Sub-modules:
    models      — Warning aggregate, embedded updates/actions, query shapes
    store       — WarningStore (validation, per-warning locking) + repositories
    controller  — Lifecycle operations, each followed by one dispatch event
"""

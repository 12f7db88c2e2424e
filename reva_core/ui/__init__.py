# =============================================================================
# reva_core/ui/__init__.py
# Diagnostics UI Helpers
# =============================================================================

from .sync_diagnostics import (
    status_badge,
    per_type_frame,
    subscription_frame,
    outbox_frame,
    dead_letter_frame,
    conflict_frame,
    pending_by_type,
    reported_health,
    channel_frame,
    render_status_header,
    render_frame,
)

__all__ = [
    "status_badge",
    "per_type_frame",
    "subscription_frame",
    "outbox_frame",
    "dead_letter_frame",
    "conflict_frame",
    "pending_by_type",
    "reported_health",
    "channel_frame",
    "render_status_header",
    "render_frame",
]

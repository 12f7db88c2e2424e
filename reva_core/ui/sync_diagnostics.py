# =============================================================================
# reva_core/ui/sync_diagnostics.py
# DataFrames and Streamlit Widgets for Sync Diagnostics
# =============================================================================

from __future__ import annotations
from datetime import datetime
from typing import Dict, Optional, Tuple

import pandas as pd
import streamlit as st

from reva_core.errors import error_boundary
from reva_core.offline.local_store import LocalStore
from reva_core.offline.models import (
    CoordinatorState,
    HealthStatus,
    SubscriptionState,
    parse_timestamp,
    utcnow,
)
from reva_core.offline.sync_coordinator import AGENT_STATUS_KEY

SUCCESS_COLOR = "#22C55E"
WARNING_COLOR = "#F59E0B"
DANGER_COLOR = "#EF4444"
SUBTLE_TEXT = "#94A3B8"

# Agent reports older than this are treated as missing
AGENT_STATUS_MAX_AGE = 90.0

CHANNEL_COLUMNS = [
    "channel", "state", "consumers", "attempts", "last_error", "connected_at", "last_event_at",
]


def status_badge(health: HealthStatus, known: bool = True) -> Tuple[str, str]:
    """Label and color summarizing a health snapshot."""
    if not known:
        return "Status unknown", SUBTLE_TEXT
    if not health.is_online:
        return "Offline", SUBTLE_TEXT
    if health.conflict_count or health.dead_letter_count:
        return "Needs attention", DANGER_COLOR
    if health.pending_count or any(s != SubscriptionState.CONNECTED for s in health.subscriptions.values()):
        return "Syncing", WARNING_COLOR
    return "Up to date", SUCCESS_COLOR


def per_type_frame(health: HealthStatus) -> pd.DataFrame:
    """One row per entity type with its SyncStatus."""
    rows = [status.to_dict() for status in health.per_type.values()]
    columns = ["entity_type", "connected_subscriptions", "pending_count", "last_synced_at"]
    if not rows:
        return pd.DataFrame(columns=columns)
    frame = pd.DataFrame(rows, columns=columns)
    frame["last_synced_at"] = pd.to_datetime(frame["last_synced_at"], utc=True)
    return frame.sort_values("entity_type").reset_index(drop=True)


def subscription_frame(statuses: Dict[str, SubscriptionState]) -> pd.DataFrame:
    frame = pd.DataFrame(
        [{"channel": key, "state": state.value} for key, state in statuses.items()],
        columns=["channel", "state"],
    )
    return frame.sort_values("channel").reset_index(drop=True)


def outbox_frame(store: LocalStore, now: Optional[datetime] = None) -> pd.DataFrame:
    """Pending outbox entries with their age in seconds."""
    frame = store.to_dataframe("outbox")
    if frame.empty:
        frame["age_seconds"] = pd.Series(dtype=float)
        return frame
    created = pd.to_datetime(frame["created_at"], utc=True)
    frame["age_seconds"] = (pd.Timestamp(now or utcnow()) - created).dt.total_seconds().round(1)
    return frame


@error_boundary(default_return=None, error_message="Could not read the agent status report")
def reported_health(
    store: LocalStore,
    now: Optional[datetime] = None,
    max_age: float = AGENT_STATUS_MAX_AGE,
) -> Optional[HealthStatus]:
    """
    Health as last published by the running sync agent.

    Counts come from the database; state, connectivity and channels come
    from the report. Returns None when there is no recent report or the
    agent reported that it stopped.
    """
    report = store.get_meta(AGENT_STATUS_KEY)
    if not report:
        return None
    health = report["health"]
    reported_at = parse_timestamp(health["timestamp"])
    if reported_at is None or ((now or utcnow()) - reported_at).total_seconds() > max_age:
        return None
    if health["state"] == CoordinatorState.STOPPED.value:
        return None
    return HealthStatus(
        state=CoordinatorState(health["state"]),
        is_online=bool(health["is_online"]),
        subscriptions={key: SubscriptionState(value) for key, value in health["subscriptions"].items()},
        pending_count=store.pending_count(),
        dead_letter_count=store.dead_letter_count(),
        conflict_count=store.conflict_count(),
        last_sync_at=parse_timestamp(store.get_meta("last_synced")),
        timestamp=reported_at,
    )


def channel_frame(store: LocalStore) -> pd.DataFrame:
    """Per-channel details from the agent's last status report."""
    report = store.get_meta(AGENT_STATUS_KEY) or {}
    return pd.DataFrame(report.get("channels", []), columns=CHANNEL_COLUMNS)


def dead_letter_frame(store: LocalStore) -> pd.DataFrame:
    return store.to_dataframe("dead_letter")


def conflict_frame(store: LocalStore) -> pd.DataFrame:
    frame = store.to_dataframe("conflicts")
    frame["conflict_deleted"] = frame["conflict_deleted"].astype(bool)
    return frame


def pending_by_type(store: LocalStore) -> pd.DataFrame:
    """Outbox entry counts per entity type and operation."""
    frame = store.to_dataframe("outbox")
    if frame.empty:
        return pd.DataFrame(columns=["entity_type", "operation", "count"])
    return (
        frame.groupby(["entity_type", "operation"])
        .size()
        .reset_index(name="count")
    )


# =============================================================================
# STREAMLIT WIDGETS
# =============================================================================

def render_status_header(health: HealthStatus, known: bool = True) -> None:
    label, color = status_badge(health, known)
    st.markdown(
        f"<div style='display:flex;gap:.6rem;align-items:center;'>"
        f"<span style='width:.8rem;height:.8rem;border-radius:50%;background:{color};'></span>"
        f"<strong>{label}</strong></div>",
        unsafe_allow_html=True,
    )
    if not known:
        st.caption("No recent status report from the sync agent; counts are read from the database.")
    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Pending", health.pending_count)
    c2.metric("Dead-lettered", health.dead_letter_count)
    c3.metric("Conflicts", health.conflict_count)
    c4.metric(
        "Last sync",
        health.last_sync_at.strftime("%H:%M:%S") if health.last_sync_at else "never",
    )


def render_frame(title: str, frame: pd.DataFrame, empty_message: str = "Nothing here.") -> None:
    st.subheader(title)
    if frame.empty:
        st.caption(empty_message)
    else:
        st.dataframe(frame, use_container_width=True, hide_index=True)

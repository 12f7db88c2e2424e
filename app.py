"""
Reva Sync Diagnostics - Streamlit dashboard over the local sync database.

Run with:
    streamlit run app.py

Shows the outbox, dead-lettered mutations and conflicts recorded by the
sync agent, and lets the user retry or discard dead-lettered mutations.
The running agent picks those actions up on its next sync pass.
"""

from typing import Tuple

import streamlit as st

from reva_core.config import load_settings
from reva_core.errors import SyncCoreError, handle_error
from reva_core.logging import setup_logging
from reva_core.offline import CoordinatorState, HealthStatus, LocalStore
from reva_core.offline.models import parse_timestamp
from reva_core.offline.sync_coordinator import mark_entity_stale
from reva_core.ui import (
    channel_frame,
    conflict_frame,
    dead_letter_frame,
    outbox_frame,
    pending_by_type,
    render_frame,
    render_status_header,
    reported_health,
)

st.set_page_config(page_title="Reva Sync Diagnostics", page_icon="🔄", layout="wide")


@st.cache_resource
def get_store() -> LocalStore:
    setup_logging(log_to_file=False)
    settings = load_settings()
    store = LocalStore(settings.db_path)
    store.initialize()
    return store


def snapshot(store: LocalStore) -> Tuple[HealthStatus, bool]:
    """
    Health from the agent's last report, and whether that report was found.

    Without a recent report only the database counts are known.
    """
    health = reported_health(store)
    if health is not None:
        return health, True
    return HealthStatus(
        state=CoordinatorState.STOPPED,
        is_online=False,
        subscriptions={},
        pending_count=store.pending_count(),
        dead_letter_count=store.dead_letter_count(),
        conflict_count=store.conflict_count(),
        last_sync_at=parse_timestamp(store.get_meta("last_synced")),
    ), False


def main() -> None:
    st.title("🔄 Reva Sync Diagnostics")

    try:
        store = get_store()
    except SyncCoreError as e:
        st.error(f"Could not open the sync database: {e.message}")
        return

    health, known = snapshot(store)
    render_status_header(health, known)
    st.divider()

    tab_outbox, tab_dead, tab_conflicts, tab_channels = st.tabs(
        ["Outbox", "Dead letter", "Conflicts", "Channels"]
    )

    with tab_outbox:
        render_frame("Pending by type", pending_by_type(store), "Outbox is empty.")
        render_frame("Queued mutations", outbox_frame(store), "Outbox is empty.")

    with tab_dead:
        frame = dead_letter_frame(store)
        render_frame("Dead-lettered mutations", frame, "No failed mutations.")
        if not frame.empty:
            key = st.selectbox("Mutation", frame["idempotency_key"].tolist())
            c1, c2 = st.columns(2)
            if c1.button("Retry", use_container_width=True):
                try:
                    store.requeue_dead_letter(key)
                    st.success("Queued for retry.")
                except SyncCoreError as e:
                    st.error(handle_error(e, context="Retry dead letter")["message"])
                st.rerun()
            if c2.button("Discard", type="secondary", use_container_width=True):
                try:
                    entry = store.discard_dead_letter(key)
                    mark_entity_stale(store, entry.entity_type, entry.entity_id)
                    st.success("Discarded; the entity will be refreshed from the server.")
                except SyncCoreError as e:
                    st.error(handle_error(e, context="Discard dead letter")["message"])
                st.rerun()

    with tab_conflicts:
        render_frame("Conflicting entities", conflict_frame(store), "No conflicts.")
        st.caption("Conflicts are resolved in the app (keep mine / keep theirs).")

    with tab_channels:
        render_frame("Realtime channels", channel_frame(store), "The sync agent has not reported any channels.")
        if not known:
            st.caption("Channel details may be out of date while the agent is not reporting.")


main()

"""Wires the pipelines and the reconciler from settings."""
from __future__ import annotations

from typing import Any

from timebridge import config
from timebridge.db.identity_store import IdentityStore
from timebridge.sync.discovery import TagDiscoveryPipeline
from timebridge.sync.posting import TimePostingPipeline
from timebridge.sync.reconciler import BatchReconciler
from timebridge.sync.retry_policy import RetryPolicy


def build_reconciler(store: IdentityStore, tracker: Any, platform: Any) -> BatchReconciler:
    retry_policy = RetryPolicy(max_attempts=config.MAX_RETRY_ATTEMPTS)
    discovery = TagDiscoveryPipeline(
        store,
        tracker,
        platform,
        upsert_path=config.TAG_UPSERT_PATH,
        project_keys=config.PROJECT_KEYS_FILTER,
        excluded_statuses=config.EXCLUDED_STATUSES,
        issue_url_base=config.JIRA_BASE_URL,
        page_size=min(100, config.TAG_UPSERT_BATCH_SIZE),
        retry_policy=retry_policy,
    )
    posting = TimePostingPipeline(
        store,
        tracker,
        caller_key=config.CALLER_KEY,
        upsert_path=config.TAG_UPSERT_PATH,
        project_keys=config.PROJECT_KEYS_FILTER,
        retry_policy=retry_policy,
        unknown_tag_grace_attempts=config.UNKNOWN_TAG_GRACE_ATTEMPTS,
    )
    return BatchReconciler(
        store,
        platform,
        discovery,
        posting,
        discovery_start=config.DISCOVERY_START,
        posting_batch_size=config.POSTING_BATCH_SIZE,
        tag_sync_interval_minutes=config.TAG_SYNC_INTERVAL_MINUTES,
        tag_upsert_batch_size=config.TAG_UPSERT_BATCH_SIZE,
    )

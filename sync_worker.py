#!/usr/bin/env python3
"""
Backup Sync Worker

Keeps the GitHub backup in step with the local store:
  - pull: on startup, replace local products/entries with the remote backup
  - push: after every local mutation, write the full local state as a new backup

Status is published through SyncStatus; failures never escape to the caller
and nothing is retried automatically (the next mutation triggers a new push).

Env vars:
  POS_DB_PATH      SQLite DB path (default: pos.db)

Run one attempt from the shell:
  python sync_worker.py pull
  python sync_worker.py push
"""
import argparse
import logging
import threading
from typing import Any, Callable, Dict, List, NamedTuple, Optional

import backup_codec
import github_contents as gh
import pos_store
from backup_codec import MalformedDocument, iso_now
from pos_store import LocalStore, StorageFailure

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_SYNCING = "syncing"

SUCCESS = "success"
NO_CREDENTIALS = "no_credentials"
CONFLICT = "conflict"
AUTH_FAILURE = "auth_failure"
NETWORK_FAILURE = "network_failure"
MALFORMED_REMOTE_DATA = "malformed_remote_data"
STORAGE_FAILURE = "storage_failure"


class Credentials(NamedTuple):
    owner: str
    repo: str
    token: str


def load_credentials(store: LocalStore) -> Optional[Credentials]:
    """Read the three GitHub settings; None when any is missing or blank."""
    values = []
    for key in pos_store.SETTING_KEYS:
        value = (store.get_setting(key) or "").strip()
        if not value:
            return None
        values.append(value)
    return Credentials(*values)


def default_client_factory(creds: Credentials) -> gh.GitHubContentsClient:
    return gh.GitHubContentsClient(creds.owner, creds.repo, creds.token)


class SyncStatus:
    """The single user-facing sync status, shared across threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: List[Callable[[Dict[str, Any]], None]] = []
        self.state = STATE_IDLE
        self.outcome: Optional[str] = None
        self.message = ""
        self.updated_utc: Optional[str] = None

    def subscribe(self, listener: Callable[[Dict[str, Any]], None]):
        with self._lock:
            self._listeners.append(listener)

    def begin(self, message: str):
        self._update(STATE_SYNCING, None, message)

    def finish(self, outcome: str, message: str):
        self._update(STATE_IDLE, outcome, message)

    def _update(self, state: str, outcome: Optional[str], message: str):
        with self._lock:
            self.state = state
            self.outcome = outcome
            self.message = message
            self.updated_utc = iso_now()
            snapshot = self._as_dict()
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Sync status listener failed")

    def _as_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "outcome": self.outcome,
            "message": self.message,
            "updated_utc": self.updated_utc,
        }

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return self._as_dict()


class SyncStrategy:
    """How local state is exchanged with the remote document."""

    def pull(self, store: LocalStore, client: gh.GitHubContentsClient) -> bool:
        """Restore local data from the remote; False when no remote backup exists."""
        raise NotImplementedError

    def push(self, store: LocalStore, client: gh.GitHubContentsClient) -> str:
        """Publish local data; returns the new version token."""
        raise NotImplementedError


class SnapshotSync(SyncStrategy):
    """Push the whole state on every mutation; pull replaces everything."""

    def pull(self, store: LocalStore, client: gh.GitHubContentsClient) -> bool:
        remote = client.fetch_current()
        if remote is None:
            return False
        # decode before touching the store: a malformed backup changes nothing
        products, entries = backup_codec.decode(remote.content)
        store.replace_all(products, entries)
        logger.info("Restored %d product(s) and %d entry(ies) from backup", len(products), len(entries))
        return True

    def push(self, store: LocalStore, client: gh.GitHubContentsClient) -> str:
        remote = client.fetch_current()
        sha = remote.sha if remote else None
        products, entries = store.snapshot()
        content = backup_codec.encode(products, entries)
        new_sha = client.write_document(content, sha)
        logger.info(
            "Pushed backup: %d product(s), %d entry(ies), sha %s -> %s",
            len(products), len(entries), sha or "none", new_sha
        )
        return new_sha


class SyncOrchestrator:
    def __init__(
        self,
        store: LocalStore,
        strategy: Optional[SyncStrategy] = None,
        status: Optional[SyncStatus] = None,
        client_factory: Optional[Callable[[Credentials], gh.GitHubContentsClient]] = None,
        background: bool = False,
    ):
        self.store = store
        self.strategy = strategy or SnapshotSync()
        self.status = status or SyncStatus()
        self.client_factory = client_factory or default_client_factory
        self.background = background
        self._attempt_lock = threading.Lock()
        self._thread_lock = threading.Lock()
        self._push_requested = threading.Event()
        self._stopping = False
        self._thread: Optional[threading.Thread] = None

    def report(self, outcome: str, message: str):
        self.status.finish(outcome, message)

    # ---------- ATTEMPTS ----------
    def pull(self) -> str:
        """Startup pull. Local data is only replaced by a fully decoded backup."""
        return self._attempt("pull", self._do_pull)

    def push(self) -> str:
        return self._attempt("push", self._do_push)

    def _do_pull(self, client: gh.GitHubContentsClient) -> str:
        if self.strategy.pull(self.store, client):
            return "Data loaded from GitHub"
        return "No backup on GitHub yet; keeping local data"

    def _do_push(self, client: gh.GitHubContentsClient) -> str:
        self.strategy.push(self.store, client)
        return "Backup saved to GitHub"

    def _attempt(self, kind: str, action: Callable[[gh.GitHubContentsClient], str]) -> str:
        with self._attempt_lock:
            try:
                creds = load_credentials(self.store)
            except StorageFailure as exc:
                return self._fail(kind, STORAGE_FAILURE, f"Local storage error: {exc}")
            if creds is None:
                logger.info("GitHub settings missing; skipping %s", kind)
                self.report(NO_CREDENTIALS, "GitHub settings are missing")
                return NO_CREDENTIALS

            self.status.begin("Syncing with GitHub…")
            try:
                message = action(self.client_factory(creds))
            except gh.Conflict as exc:
                return self._fail(kind, CONFLICT, f"Backup on GitHub changed since it was read; not overwritten ({exc})")
            except gh.AuthFailure as exc:
                return self._fail(kind, AUTH_FAILURE, f"GitHub rejected the credentials: {exc}")
            except gh.NetworkFailure as exc:
                return self._fail(kind, NETWORK_FAILURE, f"GitHub sync failed: {exc}")
            except MalformedDocument as exc:
                return self._fail(kind, MALFORMED_REMOTE_DATA, f"Backup on GitHub is malformed: {exc}")
            except StorageFailure as exc:
                return self._fail(kind, STORAGE_FAILURE, f"Local storage error: {exc}")
            self.report(SUCCESS, message)
            return SUCCESS

    def _fail(self, kind: str, outcome: str, message: str) -> str:
        logger.warning("Sync %s failed (%s): %s", kind, outcome, message)
        self.report(outcome, message)
        return outcome

    # ---------- MUTATION HOOK ----------
    def after_mutation(self) -> Optional[str]:
        """Push after a local change: inline, or handed to the worker thread."""
        if not self.background:
            return self.push()
        self.start()
        self._push_requested.set()
        return None

    # ---------- WORKER THREAD ----------
    def start(self):
        with self._thread_lock:
            if self._thread and self._thread.is_alive():
                return
            self._stopping = False
            self._thread = threading.Thread(target=self._worker_loop, name="backup-sync", daemon=True)
            self._thread.start()
        logger.info("Backup sync worker started")

    def stop(self, timeout: Optional[float] = None):
        with self._thread_lock:
            thread, self._thread = self._thread, None
            self._stopping = True
            self._push_requested.set()
        if thread:
            thread.join(timeout)

    def _worker_loop(self):
        while True:
            self._push_requested.wait()
            if self._stopping:
                return
            # requests arriving during this push set the event again: one more push follows
            self._push_requested.clear()
            try:
                self.push()
            except Exception:
                logger.exception("Backup push crashed")


def main():
    ap = argparse.ArgumentParser(description="Run one backup sync attempt")
    ap.add_argument("mode", choices=("pull", "push"))
    ap.add_argument("--db", default=pos_store.DB_PATH, help="Path to SQLite DB")
    args = ap.parse_args()
    logging.basicConfig(level=logging.INFO, format="[sync] %(asctime)s %(levelname)s %(message)s")

    store = pos_store.connect(args.db)
    try:
        orchestrator = SyncOrchestrator(store)
        outcome = orchestrator.pull() if args.mode == "pull" else orchestrator.push()
        print(f"[sync] {args.mode}: {outcome} - {orchestrator.status.message}")
    finally:
        store.close()
    return 0 if outcome in (SUCCESS, NO_CREDENTIALS) else 1


if __name__ == "__main__":
    raise SystemExit(main())

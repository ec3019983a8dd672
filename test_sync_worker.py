import json
import threading
import unittest

import requests

import backup_codec
import github_contents as gh
import pos_store
import sync_worker as sw
from test_github_contents import FakeGitHubSession, FakeResponse, TOKEN


def save_credentials(store, owner="alice", repo="till-backup", token=TOKEN):
    store.put_setting(pos_store.SETTING_OWNER, owner)
    store.put_setting(pos_store.SETTING_REPO, repo)
    store.put_setting(pos_store.SETTING_TOKEN, token)


class RacingSession(FakeGitHubSession):
    """Another writer updates the backup right after our GET."""

    def request(self, method, url, headers=None, **kwargs):
        response = super().request(method, url, headers=headers, **kwargs)
        if method == "GET":
            self.seed("data.json", b'{"products": [], "entries": []}')
        return response


class SyncOrchestratorTest(unittest.TestCase):
    def setUp(self):
        self.store = pos_store.connect(":memory:")
        self.session = FakeGitHubSession()
        self.sync = self._orchestrator(self.session)

    def tearDown(self):
        self.sync.stop(timeout=5)
        self.store.close()

    def _orchestrator(self, session, **kwargs):
        def factory(creds):
            return gh.GitHubContentsClient(creds.owner, creds.repo, creds.token, path="data.json", session=session)
        return sw.SyncOrchestrator(self.store, client_factory=factory, **kwargs)

    def _seed_local(self):
        p = self.store.add_product("Coffee", 2.5)
        self.store.add_entry(p["id"], "Coffee", 3.0, 7.5, "2026-10-19T08:30:00.000Z")
        return self.store.snapshot()

    def _remote_document(self):
        content, _ = self.session.files["data.json"]
        return json.loads(content.decode("utf-8"))

    # ---------- credentials ----------
    def test_push_without_credentials_makes_no_network_call(self):
        self._seed_local()
        self.assertEqual(self.sync.push(), sw.NO_CREDENTIALS)
        self.assertEqual(self.session.calls, [])
        self.assertEqual(self.sync.status.outcome, sw.NO_CREDENTIALS)
        self.assertEqual(self.sync.status.state, sw.STATE_IDLE)

    def test_blank_credential_counts_as_missing(self):
        save_credentials(self.store, token="   ")
        self.assertIsNone(sw.load_credentials(self.store))
        self.assertEqual(self.sync.push(), sw.NO_CREDENTIALS)
        self.assertEqual(self.session.calls, [])

    def test_load_credentials(self):
        save_credentials(self.store, owner=" alice ")
        self.assertEqual(sw.load_credentials(self.store), sw.Credentials("alice", "till-backup", TOKEN))

    # ---------- push ----------
    def test_first_push_creates_backup_of_full_state(self):
        save_credentials(self.store)
        products, entries = self._seed_local()
        self.assertEqual(self.sync.push(), sw.SUCCESS)
        put = [c for c in self.session.calls if c["method"] == "PUT"][0]
        self.assertNotIn("sha", put["json"])
        doc = self._remote_document()
        self.assertEqual(doc["products"], products)
        self.assertEqual(doc["entries"], entries)
        self.assertIn("updatedAt", doc)
        self.assertEqual(self.sync.status.message, "Backup saved to GitHub")

    def test_later_push_is_conditioned_on_current_sha(self):
        save_credentials(self.store)
        self.sync.push()
        _, sha = self.session.files["data.json"]
        self._seed_local()
        self.assertEqual(self.sync.push(), sw.SUCCESS)
        put = [c for c in self.session.calls if c["method"] == "PUT"][-1]
        self.assertEqual(put["json"]["sha"], sha)
        self.assertEqual(len(self._remote_document()["products"]), 1)

    def test_concurrent_remote_change_is_conflict(self):
        session = RacingSession()
        sync = self._orchestrator(session)
        save_credentials(self.store)
        session.seed("data.json", b'{"products": [], "entries": []}')
        before = self._seed_local()
        self.assertEqual(sync.push(), sw.CONFLICT)
        self.assertEqual(sync.status.outcome, sw.CONFLICT)
        self.assertEqual(self.store.snapshot(), before)
        self.assertEqual(session.files["data.json"][0], b'{"products": [], "entries": []}')
        self.assertEqual(len([c for c in session.calls if c["method"] == "PUT"]), 1)

    def test_push_reports_auth_and_network_failures(self):
        save_credentials(self.store, token="revoked")
        self.assertEqual(self.sync.push(), sw.AUTH_FAILURE)
        save_credentials(self.store)
        self.session.raise_exc = requests.Timeout("timed out")
        self.assertEqual(self.sync.push(), sw.NETWORK_FAILURE)
        self.assertIn("timed out", self.sync.status.message)

    def test_storage_failure_is_reported(self):
        save_credentials(self.store)
        self.store.close()
        self.assertEqual(self.sync.push(), sw.STORAGE_FAILURE)
        self.assertEqual(self.session.calls, [])
        self.store = pos_store.connect(":memory:")

    # ---------- pull ----------
    def test_pull_without_backup_keeps_local_data(self):
        save_credentials(self.store)
        before = self._seed_local()
        self.assertEqual(self.sync.pull(), sw.SUCCESS)
        self.assertEqual(self.store.snapshot(), before)
        self.assertIn("No backup", self.sync.status.message)

    def test_pull_replaces_local_data(self):
        save_credentials(self.store)
        self._seed_local()
        remote_products = [{"id": 5, "name": "Tea", "price": 1.5}]
        remote_entries = [{
            "id": 9, "productId": 5, "productName": "Tea", "quantity": 2.0,
            "total": 3.0, "timestamp": "2026-10-18T12:00:00.000Z",
        }]
        self.session.seed("data.json", backup_codec.encode(remote_products, remote_entries))
        self.assertEqual(self.sync.pull(), sw.SUCCESS)
        self.assertEqual(self.store.snapshot(), (remote_products, remote_entries))
        self.assertEqual(self.sync.status.message, "Data loaded from GitHub")
        self.assertEqual(self.store.get_setting(pos_store.SETTING_TOKEN), TOKEN)

    def test_pull_of_malformed_backup_changes_nothing(self):
        save_credentials(self.store)
        before = self._seed_local()
        self.session.seed("data.json", b'{"products": [{"name": "Half"}], "entries": []}')
        self.assertEqual(self.sync.pull(), sw.MALFORMED_REMOTE_DATA)
        self.assertEqual(self.store.snapshot(), before)

    def test_pull_failures_leave_local_data(self):
        save_credentials(self.store)
        before = self._seed_local()
        self.session.forced["GET"] = FakeResponse(500, {"message": "Server Error"})
        self.assertEqual(self.sync.pull(), sw.NETWORK_FAILURE)
        self.assertEqual(self.store.snapshot(), before)

    def test_pull_without_credentials(self):
        self.assertEqual(self.sync.pull(), sw.NO_CREDENTIALS)
        self.assertEqual(self.session.calls, [])

    # ---------- status / strategy / worker ----------
    def test_status_listeners_see_syncing_then_result(self):
        seen = []
        self.sync.status.subscribe(lambda s: seen.append((s["state"], s["outcome"])))
        save_credentials(self.store)
        self.sync.push()
        self.assertEqual(seen, [(sw.STATE_SYNCING, None), (sw.STATE_IDLE, sw.SUCCESS)])
        self.assertIsNotNone(self.sync.status.to_dict()["updated_utc"])

    def test_strategy_can_be_replaced(self):
        calls = []

        class RecordingStrategy(sw.SyncStrategy):
            def push(self, store, client):
                calls.append(("push", client.owner))
                return "sha-1"

        save_credentials(self.store)
        sync = sw.SyncOrchestrator(self.store, strategy=RecordingStrategy(),
                                   client_factory=sw.default_client_factory)
        self.assertEqual(sync.push(), sw.SUCCESS)
        self.assertEqual(calls, [("push", "alice")])

    def test_background_worker_pushes_after_mutation(self):
        done = threading.Event()
        sync = self._orchestrator(self.session, background=True)
        sync.status.subscribe(lambda s: s["outcome"] == sw.SUCCESS and done.set())
        save_credentials(self.store)
        self._seed_local()
        try:
            self.assertIsNone(sync.after_mutation())
            self.assertTrue(done.wait(5), "background push did not finish")
        finally:
            sync.stop(timeout=5)
        self.assertEqual(len(self._remote_document()["entries"]), 1)

    def test_concurrent_mutations_start_one_worker(self):
        sync = self._orchestrator(self.session, background=True)
        started = []
        real_thread = threading.Thread

        def counting_thread(*args, **kwargs):
            thread = real_thread(*args, **kwargs)
            started.append(thread)
            return thread

        gate = threading.Barrier(8)

        def mutate():
            gate.wait()
            sync.after_mutation()

        callers = [real_thread(target=mutate) for _ in range(8)]
        sw.threading.Thread = counting_thread
        try:
            for caller in callers:
                caller.start()
            for caller in callers:
                caller.join(5)
        finally:
            sw.threading.Thread = real_thread
            sync.stop(timeout=5)
        self.assertEqual(len(started), 1)
        self.assertFalse(started[0].is_alive())

    def test_inline_mode_pushes_immediately(self):
        save_credentials(self.store)
        self.assertEqual(self.sync.after_mutation(), sw.SUCCESS)
        self.assertIn("data.json", self.session.files)


if __name__ == "__main__":
    unittest.main()

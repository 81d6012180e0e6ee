"""Обмен кода на доступ через сервер проверки кодов."""

import threading

import pytest
import requests

from code_redeemer import ALREADY_GRANTED_MESSAGE, CodeRedeemer, RedeemOutcome, RedeemStatus
from instance_catalog import Instance
from launcher_config import GUEST_NAME, identity_name
from ledger_store import StorageUnavailable
from unlock_ledger import UNLOCK_RECORD, UserSet

from conftest import FakeHttpSession, FakeResponse


URL = "http://validator.test/api/validate.php"


def make_redeemer(access, *responses, timeout=10.0):
    session = FakeHttpSession(*responses)
    return CodeRedeemer(access, URL, timeout=timeout, session=session), session


def saved_ledger(store):
    doc = store.read(UNLOCK_RECORD) or {}
    doc.pop("ID", None)
    return doc


class TestRedeem:

    @pytest.mark.parametrize("code", ["", "   ", None])
    def test_blank_code_is_rejected_locally(self, access, code):
        redeemer, session = make_redeemer(access, FakeResponse({"status": "success"}))
        assert redeemer.redeem(code, "steve") == RedeemOutcome(RedeemStatus.INVALID)
        assert session.calls == []

    def test_request_body_and_timeout(self, access):
        redeemer, session = make_redeemer(access, FakeResponse({"status": "error"}), timeout=3.5)
        redeemer.redeem("  abc ", "steve")
        assert session.calls == [{"url": URL, "json": {"codigo": "abc", "usuario": "steve"}, "timeout": 3.5}]

    def test_success_grants_user(self, store, catalog, access):
        catalog.instances = [Instance("Survival", whitelist_active=True)]
        redeemer, _ = make_redeemer(access, FakeResponse({"status": "success", "instanceName": "Survival"}))

        outcome = redeemer.redeem("XYZ", "steve")

        assert outcome == RedeemOutcome(RedeemStatus.GRANTED, "Survival")
        assert saved_ledger(store) == {"Survival": {"users": ["steve"]}}

    def test_success_accepts_instance_alias(self, access):
        redeemer, _ = make_redeemer(access, FakeResponse({"status": "success", "instance": "Survival"}))
        assert redeemer.redeem("XYZ", "steve").instance_name == "Survival"

    def test_redeeming_twice_does_not_duplicate_user(self, store, catalog, access):
        catalog.instances = [Instance("Survival", whitelist_active=True)]
        redeemer, _ = make_redeemer(access, FakeResponse({"status": "success", "instanceName": "Survival"}))

        redeemer.redeem("XYZ", "steve")
        redeemer.redeem("XYZ", "steve")

        assert saved_ledger(store)["Survival"]["users"] == ["steve"]

    def test_grant_keeps_other_instances(self, store, catalog, access):
        catalog.instances = [Instance("Survival", whitelist_active=True)]
        store.update(UNLOCK_RECORD, {"Other": {"users": ["alice"]}, "Legacy": True})
        redeemer, _ = make_redeemer(access, FakeResponse({"status": "success", "instanceName": "Survival"}))

        redeemer.redeem("XYZ", "steve")

        assert saved_ledger(store) == {
            "Other": {"users": ["alice"]},
            "Legacy": True,
            "Survival": {"users": ["steve"]},
        }

    def test_grant_merges_into_malformed_entry(self, store, catalog, access):
        catalog.instances = [Instance("Survival", whitelist_active=True)]
        store.update(UNLOCK_RECORD, {"Survival": {"users": "steve"}})
        redeemer, _ = make_redeemer(access, FakeResponse({"status": "success", "instanceName": "Survival"}))

        redeemer.redeem("XYZ", "bob")

        assert saved_ledger(store) == {"Survival": {"users": ["bob"]}}

    def test_already_granted(self, store, access):
        payload = {"status": "error", "message": ALREADY_GRANTED_MESSAGE, "instanceName": "Survival"}
        redeemer, _ = make_redeemer(access, FakeResponse(payload))

        assert redeemer.redeem("XYZ", "steve") == RedeemOutcome(RedeemStatus.ALREADY_GRANTED, "Survival")
        assert store.read(UNLOCK_RECORD) is None

    @pytest.mark.parametrize("payload", [
        {"status": "error", "message": "Código inválido"},
        {"status": "error"},
        {"message": ALREADY_GRANTED_MESSAGE},
        {},
    ])
    def test_other_responses_are_invalid(self, store, access, payload):
        redeemer, _ = make_redeemer(access, FakeResponse(payload))
        assert redeemer.redeem("XYZ", "steve") == RedeemOutcome(RedeemStatus.INVALID)
        assert store.read(UNLOCK_RECORD) is None

    @pytest.mark.parametrize("response", [
        requests.ConnectionError("refused"),
        requests.Timeout("timed out"),
        FakeResponse(invalid_json=True, status_code=502),
        FakeResponse(["not", "an", "object"]),
        FakeResponse({"status": "success"}),
    ])
    def test_transport_and_malformed_responses(self, store, access, response):
        redeemer, _ = make_redeemer(access, response)
        assert redeemer.redeem("XYZ", "steve") == RedeemOutcome(RedeemStatus.CONNECTION_FAILED)
        assert store.read(UNLOCK_RECORD) is None

    def test_storage_failure_propagates(self, store, access):
        store.root.mkdir(parents=True, exist_ok=True)
        (store.root / f"{UNLOCK_RECORD}.json").write_text("{broken", encoding="utf-8")
        redeemer, _ = make_redeemer(access, FakeResponse({"status": "success", "instanceName": "Survival"}))

        with pytest.raises(StorageUnavailable):
            redeemer.redeem("XYZ", "steve")
        assert (store.root / f"{UNLOCK_RECORD}.json").read_text(encoding="utf-8") == "{broken"


class TestEndToEnd:

    def test_password_instance_unlocked_by_code(self, store, catalog, access):
        catalog.instances = [Instance("Core", password="1234")]
        assert access.authorized_instances("steve") == []

        redeemer, _ = make_redeemer(access, FakeResponse({"status": "success", "instanceName": "Core"}))
        assert redeemer.redeem("1234", "steve") == RedeemOutcome(RedeemStatus.GRANTED, "Core")

        assert [i.name for i in access.authorized_instances("steve")] == ["Core"]
        assert access.read_ledger() == {"Core": UserSet(("steve",), "1234")}

    def test_rotated_password_relocks_instance(self, catalog, access):
        catalog.instances = [Instance("Core", password="1234")]
        redeemer, _ = make_redeemer(access, FakeResponse({"status": "success", "instanceName": "Core"}))
        redeemer.redeem("1234", "steve")

        catalog.instances = [Instance("Core", password="5678")]

        assert access.authorized_instances("steve") == []
        assert access.read_ledger() == {}

    def test_instance_missing_from_cached_catalog_is_refreshed(self, catalog, access):
        catalog.remote = [Instance("Core", password="1234")]
        redeemer, _ = make_redeemer(access, FakeResponse({"status": "success", "instanceName": "Core"}))

        assert redeemer.redeem("1234", "steve") == RedeemOutcome(RedeemStatus.GRANTED, "Core")

        assert catalog.forced_updates == 1
        assert access.read_ledger() == {"Core": UserSet(("steve",), "1234")}
        assert [i.name for i in access.authorized_instances("steve")] == ["Core"]

    def test_unreachable_catalog_keeps_submitted_code(self, catalog, access):
        redeemer, _ = make_redeemer(access, FakeResponse({"status": "success", "instanceName": "Core"}))
        redeemer.redeem(" 1234 ", "steve")

        assert access.read_ledger() == {"Core": UserSet(("steve",), "1234")}

        catalog.instances = [Instance("Core", password="1234")]
        assert [i.name for i in access.authorized_instances("steve")] == ["Core"]

    def test_cached_instance_skips_refresh(self, catalog, access):
        catalog.instances = [Instance("Core", password="1234")]
        redeemer, _ = make_redeemer(access, FakeResponse({"status": "success", "instanceName": "Core"}))
        redeemer.redeem("1234", "steve")
        assert catalog.forced_updates == 0


class SlowHttpSession(FakeHttpSession):
    """Держит ответ, пока все потоки не дойдут до запроса."""

    def __init__(self, response, parties: int):
        super().__init__(response)
        self.barrier = threading.Barrier(parties)

    def post(self, url, json=None, timeout=None):
        self.barrier.wait(timeout=5)
        return super().post(url, json=json, timeout=timeout)


class TestConcurrentRedemption:

    def test_parallel_redemptions_keep_every_user(self, store, catalog, access):
        catalog.instances = [Instance("Core", password="1234")]
        users = [f"player{n}" for n in range(8)]
        session = SlowHttpSession(FakeResponse({"status": "success", "instanceName": "Core"}), len(users))
        redeemer = CodeRedeemer(access, URL, session=session)
        outcomes = []

        threads = [threading.Thread(target=lambda u=u: outcomes.append(redeemer.redeem("1234", u))) for u in users]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes == [RedeemOutcome(RedeemStatus.GRANTED, "Core")] * len(users)
        entry = access.read_ledger()["Core"]
        assert sorted(entry.users) == sorted(users)
        assert entry.code == "1234"

    def test_redemption_and_reconcile_do_not_lose_writes(self, store, catalog, access):
        catalog.instances = [Instance("Core", password="1234"), Instance("Old", password="new")]
        store.update(UNLOCK_RECORD, {"Old": {"code": "stale"}, "Kept": {"users": ["alice"]}})
        session = SlowHttpSession(FakeResponse({"status": "success", "instanceName": "Core"}), 1)
        redeemer = CodeRedeemer(access, URL, session=session)

        def reconcile_loop():
            for _ in range(20):
                access.reconciled_ledger(catalog.get_instance_list())

        threads = [threading.Thread(target=reconcile_loop) for _ in range(2)]
        threads.append(threading.Thread(target=lambda: redeemer.redeem("1234", "steve")))
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert saved_ledger(store) == {
            "Kept": {"users": ["alice"]},
            "Core": {"users": ["steve"], "code": "1234"},
        }


class TestGuestIdentity:

    def test_guest_grant_is_visible_to_the_same_identity(self, store, catalog, access):
        catalog.instances = [Instance("Event", whitelist_active=True)]
        identity = identity_name(store)
        redeemer, session = make_redeemer(access, FakeResponse({"status": "success", "instanceName": "Event"}))

        redeemer.redeem("EVT", identity)

        assert session.calls[0]["json"]["usuario"] == GUEST_NAME
        assert [i.name for i in access.authorized_instances(identity_name(store))] == ["Event"]

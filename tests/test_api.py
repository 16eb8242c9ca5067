import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from engine.constitution import DISTRIBUTION_LAWS
from engine.intent import IntentVerifier
from engine.lifecycle import WillService
from engine.limiter import SpendingLimiter
from engine.reallocation import IntentQuantifier, ReallocationEngine
from engine.signature import SignatureVerifier
from social.source import StaticSocialSource

from conftest import ALICE, BOB, OWNER, SECOND, FakeLedger, FakeLLM, FakeVault, sign_link, sign_will

PLAN = [
    {"address": ALICE, "name": "Alice", "percentage": 60},
    {"address": BOB, "name": "Bob", "percentage": 40},
]


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def api(store, llm):
    ledger = FakeLedger(native={OWNER.address: DISTRIBUTION_LAWS.NATIVE_GAS_RESERVE_WEI + 1000})
    service = WillService(
        store=store,
        verifier=SignatureVerifier(),
        limiter=SpendingLimiter(),
        ledger=ledger,
        vault_provider=FakeVault(ledger),
    )
    engine = ReallocationEngine(IntentQuantifier(llm))
    verifier = IntentVerifier(llm, StaticSocialSource(), engine)
    app = create_app(service, store, reallocation_engine=engine, intent_verifier=verifier)
    return TestClient(app)


def _authorize(api, plan=PLAN):
    return api.post("/will/authorize", json={
        "owner": OWNER.address,
        "beneficiaries": plan,
        "totalAmount": "1000",
        "validUntil": 1_900_000_000,
        "signature": sign_will(OWNER, plan),
    })


class TestWillRoutes:
    def test_health_and_config(self, api):
        assert api.get("/health").json()["status"] == "ok"
        config = api.get("/will/config").json()
        assert config["primaryType"] == "WillAuthorization"
        assert "WillAuthorization" in config["types"]
        assert config["defaultLimits"]["perTxLimit"] == str(DISTRIBUTION_LAWS.DEFAULT_PER_TX_LIMIT)

    def test_authorize_then_status(self, api):
        resp = _authorize(api)
        assert resp.status_code == 200
        will_id = resp.json()["willId"]

        status = api.get(f"/will/status/{OWNER.address}").json()
        assert status["will"]["willId"] == will_id
        assert status["will"]["status"] == "pending"
        assert status["will"]["totalAmount"] == "1000"
        assert len(status["linkedWallets"]) == 1

    def test_bad_signature_is_400(self, api):
        resp = api.post("/will/authorize", json={
            "owner": OWNER.address,
            "beneficiaries": PLAN,
            "totalAmount": 1000,
            "validUntil": 1_900_000_000,
            "signature": sign_will(SECOND, PLAN),
        })
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "invalid_signature"

    def test_fractional_amount_rejected(self, api):
        resp = api.post("/will/authorize", json={
            "owner": OWNER.address, "beneficiaries": PLAN, "totalAmount": "1.5",
            "validUntil": 1, "signature": "0x",
        })
        assert resp.status_code == 400

    def test_unknown_status_is_404(self, api):
        assert api.get(f"/will/status/{SECOND.address}").status_code == 404

    def test_execute(self, api):
        will_id = _authorize(api).json()["willId"]

        resp = api.post("/will/execute", json={"willId": will_id, "owner": OWNER.address})

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert [t["amount"] for t in body["transactions"]] == ["600", "400"]

        again = api.post("/will/execute", json={"willId": will_id, "owner": OWNER.address})
        assert again.status_code == 409

        records = api.get(f"/transactions/will/{will_id}").json()["transactions"]
        assert len(records) == 2
        assert len(api.get("/transactions?limit=1").json()["transactions"]) == 1

    def test_execute_errors(self, api):
        will_id = _authorize(api).json()["willId"]
        assert api.post("/will/execute", json={"willId": "nope", "owner": OWNER.address}).status_code == 404
        assert api.post("/will/execute", json={"willId": will_id, "owner": SECOND.address}).status_code == 403

    def test_wallet_routes(self, api):
        will_id = _authorize(api).json()["willId"]

        resp = api.post(f"/will/{will_id}/wallets", json={
            "address": SECOND.address, "signature": sign_link(SECOND, will_id),
        })
        assert resp.status_code == 200
        assert len(api.get(f"/will/{will_id}/wallets").json()["wallets"]) == 2

        assert api.delete(f"/will/{will_id}/wallets/{SECOND.address}").json() == {"success": True}
        assert len(api.get(f"/will/{will_id}/wallets").json()["wallets"]) == 1
        assert len(api.get(f"/will/{will_id}/wallets?all=true").json()["wallets"]) == 2

        last = api.delete(f"/will/{will_id}/wallets/{OWNER.address}")
        assert last.status_code == 400


class TestIntentRoutes:
    def test_verify_intent_keeps_plan_on_high_match(self, api, llm):
        llm.responses.append({"isVerified": True, "confidence": 90, "intentMatch": 85,
                              "recommendation": "EXECUTE", "extractedIntents": []})

        body = api.post("/will/verify-intent", json={
            "manifesto": "split between my siblings", "beneficiaries": PLAN, "handle": "me",
        }).json()

        assert body["verification"]["intentMatch"] == 85
        assert len(body["verification"]["tweets"]) == 4
        assert body["reallocation"] is None
        assert [b["percentage"] for b in body["beneficiaries"]] == [60, 40]

    def test_reallocate(self, api, llm):
        llm.responses.append({"beneficiaries": [{"name": "Bob", "action": "REMOVE"}]})

        body = api.post("/will/reallocate", json={
            "beneficiaries": PLAN, "extractedIntents": ["cut Bob out"], "intentMatch": 20,
        }).json()

        alice, bob = body["adjustedBeneficiaries"]
        assert alice["percentage"] > 60
        assert 0 < bob["percentage"] < 40
        assert body["recommendation"] == "EXECUTE"

    @pytest.mark.parametrize("path", ["/will/verify-intent", "/will/reallocate"])
    def test_malformed_percentage_is_400(self, api, path):
        plan = [{"address": ALICE, "name": "Alice", "percentage": "sixty"}]
        resp = api.post(path, json={"beneficiaries": plan})
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "invalid_plan"

    def test_reallocate_validates_intent_match(self, api):
        resp = api.post("/will/reallocate", json={"beneficiaries": PLAN, "intentMatch": 120})
        assert resp.status_code == 422

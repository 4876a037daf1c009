"""
HTTP surface tests. The client is used without the lifespan context, so no
tickers or queue consumers run; every request works against the module's
in-memory store.
"""
import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import ORG_ID, FakeGateway, build_flow
from models.schemas import Campaign, Connection


@pytest.fixture
def main(monkeypatch):
    from api import main as app_module
    monkeypatch.setattr(app_module.settings.gateway, "verify_token", "my_verify")
    monkeypatch.setattr(app_module.settings.gateway, "connections",
                        {"conn-api": {"phone_number_id": "PN-API", "access_token": "t"}})
    monkeypatch.setattr(app_module.orchestrator.runner, "gateway", FakeGateway())
    return app_module


@pytest.fixture
def client(main):
    return TestClient(main.app)


def seed_conversation(main, phone: str):
    async def go():
        await main.store.save_connection(Connection(id="conn-api", organization_id=ORG_ID))
        return await main.store.ensure_conversation(ORG_ID, "conn-api", phone, "Ana")
    return asyncio.run(go())


def seed_flow(main, flow_id: str):
    flow = build_flow(
        [("start", "start"), ("ask", "input", {"prompt": "Your email?", "variable_name": "email",
                                               "validation": "email"}),
         ("end", "end")],
        [("start", "ask"), ("ask", "end")],
        id=flow_id,
    )
    asyncio.run(main.store.save_flow(flow))
    return flow


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    def test_queue_stats(self, client):
        data = client.get("/api/v1/queue/stats").json()
        assert set(data) == {"inbound_queue_depth", "delayed_depth", "dlq_depth"}


class TestWhatsAppWebhook:
    def test_verification(self, client):
        resp = client.get("/webhooks/whatsapp", params={
            "hub.mode": "subscribe", "hub.verify_token": "my_verify", "hub.challenge": "4242",
        })
        assert resp.status_code == 200
        assert resp.text == "4242"

    def test_verification_rejects_bad_token(self, client):
        resp = client.get("/webhooks/whatsapp", params={
            "hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "4242",
        })
        assert resp.status_code == 403

    def test_inbound_is_queued(self, client):
        payload = {"entry": [{"changes": [{"value": {
            "metadata": {"phone_number_id": "PN-API"},
            "messages": [
                {"from": "5511911110000", "type": "text", "text": {"body": "oi"}},
                {"from": "120363025@g.us", "type": "text", "text": {"body": "group"}},
            ],
        }}]}]}
        resp = client.post("/webhooks/whatsapp", json=payload)
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "queued": 1}
        assert client.get("/api/v1/queue/stats").json()["inbound_queue_depth"] >= 1


class TestFlowEndpoints:
    def test_start_and_cancel(self, main, client):
        conversation = seed_conversation(main, "5511922220000")
        seed_flow(main, "api-flow-start")

        resp = client.post("/flows/api-flow-start/start",
                           json={"conversation_id": conversation.id, "variables": {"plan": "gold"}})
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "active"
        assert body["variables"]["plan"] == "gold"
        assert main.orchestrator.runner.gateway.texts() == ["Your email?"]

        again = client.post("/flows/api-flow-start/start", json={"conversation_id": conversation.id})
        assert again.status_code == 409

        cancelled = client.post(f"/conversations/{conversation.id}/cancel-flow", json={"reason": "agent"})
        assert cancelled.json()["status"] == "cancelled"
        assert client.post(f"/conversations/{conversation.id}/cancel-flow").status_code == 404

    def test_start_unknown_flow(self, main, client):
        conversation = seed_conversation(main, "5511933330000")
        resp = client.post("/flows/ghost/start", json={"conversation_id": conversation.id})
        assert resp.status_code == 422

    def test_publish(self, main, client):
        flow = seed_flow(main, "api-flow-publish")
        resp = client.post(f"/flows/{flow.id}/publish")
        assert resp.status_code == 200
        assert resp.json()["version"] == flow.version + 1

    def test_publish_invalid_flow(self, main, client):
        asyncio.run(main.store.save_flow(build_flow([("a", "message", {"text": "x"})], [], id="api-no-start")))
        assert client.post("/flows/api-no-start/publish").status_code == 422


class TestCampaignEndpoints:
    def test_unknown_campaign(self, client):
        assert client.get("/campaigns/ghost/progress").status_code == 404
        assert client.post("/campaigns/ghost/pause").status_code == 404

    def test_pause_then_cancel(self, main, client):
        campaign = Campaign(id="api-camp", organization_id=ORG_ID, connection_id="conn-api")
        asyncio.run(main.orchestrator.create_campaign(
            campaign, [{"phone": "5511944440000", "name": "Ana"}, {"name": "no phone"}],
        ))

        progress = client.get("/campaigns/api-camp/progress").json()
        assert (progress["status"], progress["total"], progress["pending"]) == ("pending", 1, 1)

        paused = client.post("/campaigns/api-camp/pause")
        assert paused.status_code == 200
        assert paused.json()["status"] == "paused"
        assert client.post("/campaigns/api-camp/pause").status_code == 409

        assert client.post("/campaigns/api-camp/cancel").json()["status"] == "cancelled"


class TestCrmEndpoints:
    def test_stage_change_for_unknown_deal(self, client):
        resp = client.post("/crm/stage-change", json={"deal_id": "ghost", "to_stage": "won"})
        assert resp.status_code == 200
        assert resp.json() == {"deal_id": "ghost", "automation": None}

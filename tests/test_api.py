from datetime import datetime, timezone

import httpx
import pytest
import pytest_asyncio

import main
from app.services.time_resolver import TimeExpressionResolver
from conftest import FakeSender

UTC = timezone.utc
PHONE = "+15550001111"


class FakeCommands:
    def __init__(self, reply="ok"):
        self.reply = reply
        self.calls = []

    async def handle(self, from_number, text):
        self.calls.append((from_number, text))
        return self.reply


@pytest.fixture()
def sender():
    return FakeSender()


@pytest.fixture()
def commands():
    return FakeCommands(reply='Added "Call mom".')


@pytest_asyncio.fixture()
async def client(store, clock, sender, commands, monkeypatch):
    monkeypatch.setattr(main.settings, "TELNYX_PUBLIC_KEY", None)
    main.app.dependency_overrides.update(
        {
            main.get_resolver: lambda: TimeExpressionResolver(clock=clock),
            main.get_store: lambda: store,
            main.get_commands: lambda: commands,
            main.get_sender: lambda: sender,
        }
    )
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    main.app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_health(client):
    res = await client.get("/")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_parse_time_success(client):
    res = await client.post("/api/parse-time", json={"phrase": "tomorrow at 3pm", "zone": "America/New_York"})
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["resolved_instant"] == "2024-06-02T19:00:00Z"
    assert body["display"] == "Sun Jun 02 2024, 03:00 PM EDT"


@pytest.mark.asyncio
async def test_parse_time_failure(client):
    res = await client.post("/api/parse-time", json={"phrase": "whenever", "zone": "UTC"})
    assert res.status_code == 200
    assert res.json()["success"] is False
    assert res.json()["error"] == "Could not parse time expression"


@pytest.mark.asyncio
async def test_parse_time_requires_phrase(client):
    res = await client.post("/api/parse-time", json={"phrase": "", "zone": "UTC"})
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_task_crud(client, store):
    await store.create_user("u1", phone_number=PHONE, phone_verified=True, time_zone="America/New_York")

    res = await client.post(
        "/api/tasks",
        json={
            "user_id": "u1",
            "content": "Call mom",
            "time_type": "scheduled",
            "time_value": "tomorrow at 3pm",
            "reminder_offset": 60,
        },
    )
    assert res.status_code == 201
    task = res.json()
    assert task["time_value"]["kind"] == "resolved"
    assert datetime.fromisoformat(task["time_value"]["at"].replace("Z", "+00:00")) == datetime(
        2024, 6, 2, 19, 0, tzinfo=UTC
    )
    task_id = task["task_id"]

    res = await client.put(f"/api/tasks/{task_id}", json={"content": "Call dad"})
    assert res.json()["content"] == "Call dad"
    assert res.json()["time_value"]["kind"] == "resolved"
    assert res.json()["reminder_offset"] == 60

    res = await client.put(f"/api/tasks/{task_id}", json={"time_type": "deadline", "time_value": "2024-06-05T12:00:00Z"})
    body = res.json()
    assert body["time_type"] == "deadline"
    assert body["content"] == "Call dad"
    assert body["reminder_offset"] == 60

    res = await client.patch(f"/api/tasks/{task_id}/reminder", json={"reminder_offset": 15})
    assert res.json()["reminder_offset"] == 15

    res = await client.patch(f"/api/tasks/{task_id}/reminder", json={"reminder_offset": -1})
    assert res.status_code == 422

    res = await client.get("/api/tasks", params={"user_id": "u1"})
    assert [t["content"] for t in res.json()["tasks"]] == ["Call dad"]

    res = await client.delete(f"/api/tasks/{task_id}")
    assert res.json() == {"success": True}
    assert (await client.delete(f"/api/tasks/{task_id}")).status_code == 404


@pytest.mark.asyncio
async def test_unknown_user_and_task(client):
    res = await client.post("/api/tasks", json={"user_id": "ghost", "content": "x"})
    assert res.status_code == 404
    assert (await client.put("/api/tasks/missing", json={"content": "x"})).status_code == 404
    assert (await client.patch("/api/tasks/missing/reminder", json={"reminder_offset": 5})).status_code == 404


def _inbound(text, phone=PHONE, type_="message.received"):
    return {"data": {"event_type": type_, "payload": {"from": {"phone_number": phone}, "text": text}}}


@pytest.mark.asyncio
async def test_telnyx_webhook_replies_by_sms(client, commands, sender):
    res = await client.post("/v1/sms/telnyx", json=_inbound("call mom tomorrow at 3pm"))
    assert res.status_code == 200
    assert res.text == "OK"
    assert commands.calls == [(PHONE, "call mom tomorrow at 3pm")]
    assert sender.sent == [(PHONE, 'Added "Call mom".')]


@pytest.mark.asyncio
async def test_telnyx_webhook_ignores_empty_messages(client, commands):
    res = await client.post("/v1/sms/telnyx", json=_inbound("   "))
    assert res.text == "IGNORED"
    assert commands.calls == []


@pytest.mark.asyncio
async def test_telnyx_webhook_bad_payload(client):
    res = await client.post("/v1/sms/telnyx", content=b"not json", headers={"content-type": "application/json"})
    assert res.status_code == 400

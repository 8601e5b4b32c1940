import asyncio

from resumable_chat.core.entitlements import ENTITLEMENTS_BY_USER_TYPE
from resumable_chat.schemas.chat import Visibility

from tests.helpers import parse_records, sign_in_guest, user_message_body


async def test_post_chat_streams_answer_and_persists_both_messages(client, wired_app):
    guest = await sign_in_guest(client)

    response = await client.post("/api/chat", json=user_message_body("c1", "m1"), headers=guest["headers"])

    assert response.status_code == 200
    assert response.headers["x-vercel-ai-data-stream"] == "v1"
    assert response.headers["content-type"].startswith("text/plain")
    records = parse_records(response.text)
    assert records[0][0] == "f"
    assert "".join(value for tag, value in records if tag == "0") == "Hello there!"
    assert records[-1][0] == "d"

    chat = await wired_app.state.chat_service.get_chat("c1")
    assert chat.user_id == guest["user"]["id"]
    assert chat.title == "Hello there!"

    messages = (await client.get("/api/chat/c1/messages", headers=guest["headers"])).json()
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[0]["id"] == "m1"
    assert messages[1]["id"] == records[0][1]["messageId"]
    assert messages[1]["parts"] == [{"type": "text", "text": "Hello there!"}]


async def test_resume_after_completion_replays_the_retained_stream(client):
    guest = await sign_in_guest(client)
    posted = await client.post("/api/chat", json=user_message_body("c1", "m1"), headers=guest["headers"])

    resumed = await client.get("/api/chat", params={"chatId": "c1"}, headers=guest["headers"])

    assert resumed.status_code == 200
    assert resumed.headers["x-vercel-ai-data-stream"] == "v1"
    assert resumed.text == posted.text


async def test_resume_falls_back_to_persisted_message_once_stream_expired(client, wired_app, transport):
    guest = await sign_in_guest(client)
    await client.post("/api/chat", json=user_message_body("c1", "m1"), headers=guest["headers"])
    # Drop everything the transport retained
    transport._channels.clear()

    resumed = await client.get("/api/chat", params={"chatId": "c1"}, headers=guest["headers"])

    assert resumed.status_code == 200
    (tag, data), = parse_records(resumed.text)
    assert tag == "2"
    assert data[0]["type"] == "append-message"


async def test_resume_without_streams_is_no_content(client, wired_app):
    guest = await sign_in_guest(client)
    await wired_app.state.chat_service.save_chat("empty", guest["user"]["id"], "empty", Visibility.PRIVATE)

    response = await client.get("/api/chat", params={"chatId": "empty"}, headers=guest["headers"])
    assert response.status_code == 204
    assert response.content == b""


async def test_resume_errors(client):
    guest = await sign_in_guest(client)
    other = await sign_in_guest(client)
    await client.post("/api/chat", json=user_message_body("c1", "m1"), headers=guest["headers"])

    missing_id = await client.get("/api/chat", headers=guest["headers"])
    assert missing_id.status_code == 400
    assert missing_id.json()["code"] == "bad_request:api"

    anonymous = await client.get("/api/chat", params={"chatId": "c1"})
    assert anonymous.status_code == 401
    assert anonymous.json()["code"] == "unauthorized:api"

    not_found = await client.get("/api/chat", params={"chatId": "nope"}, headers=guest["headers"])
    assert not_found.status_code == 404
    assert not_found.json()["code"] == "not_found:chat"

    forbidden = await client.get("/api/chat", params={"chatId": "c1"}, headers=other["headers"])
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "forbidden:chat"


async def test_public_chat_can_be_resumed_by_other_users(client):
    owner = await sign_in_guest(client)
    other = await sign_in_guest(client)
    posted = await client.post(
        "/api/chat", json=user_message_body("c1", "m1", visibility="public"), headers=owner["headers"]
    )

    resumed = await client.get("/api/chat", params={"chatId": "c1"}, headers=other["headers"])
    assert resumed.status_code == 200
    assert resumed.text == posted.text


async def test_post_chat_requires_authentication(client):
    response = await client.post("/api/chat", json=user_message_body("c1", "m1"))
    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"


async def test_post_chat_rejects_invalid_body(client):
    guest = await sign_in_guest(client)
    body = user_message_body("c1", "m1")
    body["message"]["parts"] = []

    response = await client.post("/api/chat", json=body, headers=guest["headers"])
    assert response.status_code == 400
    assert response.json()["code"] == "bad_request:api"


async def test_post_chat_rejects_unknown_model(client):
    guest = await sign_in_guest(client)
    body = user_message_body("c1", "m1")
    body["selectedChatModel"] = "gpt-99"

    response = await client.post("/api/chat", json=body, headers=guest["headers"])
    assert response.status_code == 400


async def test_post_chat_to_someone_elses_chat_is_forbidden(client, wired_app):
    owner = await sign_in_guest(client)
    other = await sign_in_guest(client)
    await client.post("/api/chat", json=user_message_body("c1", "m1"), headers=owner["headers"])

    response = await client.post("/api/chat", json=user_message_body("c1", "m2"), headers=other["headers"])
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden:chat"
    assert "m2" not in [m.id for m in await wired_app.state.chat_service.list_by_chat("c1")]


async def test_duplicate_message_id_is_rejected(client):
    guest = await sign_in_guest(client)
    await client.post("/api/chat", json=user_message_body("c1", "m1"), headers=guest["headers"])

    response = await client.post("/api/chat", json=user_message_body("c1", "m1"), headers=guest["headers"])
    assert response.status_code == 400
    assert response.json()["code"] == "bad_request:chat"


async def test_daily_message_limit(client, monkeypatch):
    monkeypatch.setitem(ENTITLEMENTS_BY_USER_TYPE["guest"], "max_messages_per_day", 1)
    guest = await sign_in_guest(client)
    first = await client.post("/api/chat", json=user_message_body("c1", "m1"), headers=guest["headers"])
    assert first.status_code == 200

    second = await client.post("/api/chat", json=user_message_body("c1", "m2"), headers=guest["headers"])
    assert second.status_code == 429
    assert second.json()["code"] == "rate_limit:chat"


async def test_follow_up_message_sends_history_to_model(client, model):
    guest = await sign_in_guest(client)
    await client.post("/api/chat", json=user_message_body("c1", "m1", text="first"), headers=guest["headers"])
    await client.post("/api/chat", json=user_message_body("c1", "m2", text="second"), headers=guest["headers"])

    history = model.calls[-1]["messages"]
    assert [m.role.value for m in history] == ["user", "assistant", "user"]
    assert history[-1].text() == "second"


async def test_single_shot_mode_over_http(client, settings, model):
    settings.ENABLE_STREAMING = False
    model.text = "All at once"
    guest = await sign_in_guest(client)

    response = await client.post("/api/chat", json=user_message_body("c1", "m1"), headers=guest["headers"])
    records = parse_records(response.text)
    assert [tag for tag, _ in records] == ["0", "e", "d"]
    assert records[0][1] == "All at once"


async def test_upstream_failure_ends_with_error_record(client, model, wired_app):
    model.events = []
    model.fail_with = RuntimeError("provider down")
    guest = await sign_in_guest(client)

    response = await client.post("/api/chat", json=user_message_body("c1", "m1"), headers=guest["headers"])
    assert response.status_code == 200
    assert parse_records(response.text)[-1][0] == "3"
    # Only the user's message was stored
    assert [m.id for m in await wired_app.state.chat_service.list_by_chat("c1")] == ["m1"]
    # Title generation failed too, so the message text is the title
    assert (await wired_app.state.chat_service.get_chat("c1")).title == "hi"


async def test_guest_cookie_authenticates_chat_requests(client):
    signed_in = await client.post("/api/auth/guest")
    assert "guest_user_id" in signed_in.cookies

    response = await client.post("/api/chat", json=user_message_body("c1", "m1"))
    assert response.status_code == 200
    resumed = await client.get("/api/chat", params={"chatId": "c1"})
    assert resumed.status_code == 200


async def test_delete_chat_cascades(client, wired_app):
    guest = await sign_in_guest(client)
    other = await sign_in_guest(client)
    await client.post("/api/chat", json=user_message_body("c1", "m1"), headers=guest["headers"])

    forbidden = await client.delete("/api/chat", params={"id": "c1"}, headers=other["headers"])
    assert forbidden.status_code == 403

    deleted = await client.delete("/api/chat", params={"id": "c1"}, headers=guest["headers"])
    assert deleted.status_code == 200
    assert deleted.json()["id"] == "c1"
    assert deleted.json()["userId"] == guest["user"]["id"]

    db = wired_app.state.mongodb
    assert await db.messages.count_documents({"chat_id": "c1"}) == 0
    assert await db.streams.count_documents({"chat_id": "c1"}) == 0
    gone = await client.get("/api/chat", params={"chatId": "c1"}, headers=guest["headers"])
    assert gone.status_code == 404

    again = await client.delete("/api/chat", params={"id": "c1"}, headers=guest["headers"])
    assert again.status_code == 404


async def test_messages_of_private_chat_are_hidden_from_others(client):
    guest = await sign_in_guest(client)
    other = await sign_in_guest(client)
    await client.post("/api/chat", json=user_message_body("c1", "m1"), headers=guest["headers"])

    response = await client.get("/api/chat/c1/messages", headers=other["headers"])
    assert response.status_code == 403


async def test_resume_while_generation_is_in_flight(client, wired_app, model):
    gate = asyncio.Event()
    model.gate = gate
    model.hold_at = 2
    guest = await sign_in_guest(client)

    async def post():
        return await client.post("/api/chat", json=user_message_body("c1", "m1"), headers=guest["headers"])

    async def resume():
        # Wait for the stream to be registered before reconnecting
        while not await wired_app.state.mongodb.streams.count_documents({"chat_id": "c1"}):
            await asyncio.sleep(0.005)
        response_task = asyncio.create_task(
            client.get("/api/chat", params={"chatId": "c1"}, headers=guest["headers"])
        )
        await asyncio.sleep(0.02)
        gate.set()
        return await response_task

    posted, resumed = await asyncio.gather(post(), resume())
    assert resumed.status_code == 200
    assert resumed.text == posted.text

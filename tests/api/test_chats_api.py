"""
Tests for the chat HTTP API.
"""
import pytest


async def _open_chat(client, auth_headers, buyer, listing, **extra):
    response = await client.post(
        "/api/chats",
        json={"listing_id": listing.id, **extra},
        headers=auth_headers(buyer),
    )
    assert response.status_code in (200, 201), response.text
    return response.json()


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["services"]["database"] == "ok"
    assert data["realtime"]["connections"] == 0


@pytest.mark.asyncio
async def test_requires_authentication(client):
    response = await client.get("/api/chats")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_rejects_invalid_token(client):
    response = await client.get("/api/chats", headers={"Authorization": "Bearer not-a-token"})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_create_chat_then_reuse(client, auth_headers, buyer, vendor, listing):
    first = await client.post(
        "/api/chats",
        json={"listing_id": listing.id, "initial_message": "Is this still available?"},
        headers=auth_headers(buyer),
    )
    second = await client.post("/api/chats", json={"listing_id": listing.id}, headers=auth_headers(buyer))

    assert first.status_code == 201
    assert second.status_code == 200
    created = first.json()
    assert created["is_new"] is True
    assert created["chat"]["chat_type"] == "product"
    assert created["chat"]["vendor"]["id"] == vendor.id
    assert created["chat"]["listing"]["title"] == "Vintage camera"
    assert created["initial_message"]["content"] == "Is this still available?"
    assert second.json()["is_new"] is False
    assert second.json()["chat"]["id"] == created["chat"]["id"]


@pytest.mark.asyncio
async def test_create_chat_with_self_is_rejected(client, auth_headers, vendor):
    response = await client.post("/api/chats", json={"vendor_id": vendor.id}, headers=auth_headers(vendor))

    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


@pytest.mark.asyncio
async def test_list_chats_with_unread_badge(client, auth_headers, buyer, vendor, listing):
    created = await _open_chat(client, auth_headers, buyer, listing, initial_message="Hi!")

    response = await client.get("/api/chats", headers=auth_headers(vendor))
    unread = await client.get("/api/chats/unread-count", headers=auth_headers(vendor))

    assert response.status_code == 200
    [summary] = response.json()["chats"]
    assert summary["id"] == created["chat"]["id"]
    assert summary["unread_count"] == 1
    assert summary["last_message"]["content"] == "Hi!"
    assert summary["other_participant"]["id"] == buyer.id
    assert summary["is_user_buyer"] is False
    assert unread.json() == {"unread_count": 1}


@pytest.mark.asyncio
async def test_outsider_cannot_read_chat(client, auth_headers, buyer, outsider, listing):
    created = await _open_chat(client, auth_headers, buyer, listing)
    chat_id = created["chat"]["id"]

    response = await client.get(f"/api/chats/{chat_id}", headers=auth_headers(outsider))

    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


@pytest.mark.asyncio
async def test_missing_chat_is_404(client, auth_headers, buyer):
    response = await client.get("/api/chats/9999/messages", headers=auth_headers(buyer))

    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


@pytest.mark.asyncio
async def test_send_read_and_page_messages(client, auth_headers, buyer, vendor, listing):
    chat_id = (await _open_chat(client, auth_headers, buyer, listing))["chat"]["id"]
    for text in ("one", "two", "three"):
        response = await client.post(
            f"/api/chats/{chat_id}/messages",
            json={"content": text},
            headers=auth_headers(buyer),
        )
        assert response.status_code == 201

    page = await client.get(f"/api/chats/{chat_id}/messages?limit=2", headers=auth_headers(vendor))
    data = page.json()
    assert [m["content"] for m in data["messages"]] == ["two", "three"]
    assert data["has_more"] is True

    older = await client.get(
        f"/api/chats/{chat_id}/messages?limit=2&before_id={data['next_before_id']}",
        headers=auth_headers(vendor),
    )
    assert [m["content"] for m in older.json()["messages"]] == ["one"]

    read = await client.post(f"/api/chats/{chat_id}/read", headers=auth_headers(vendor))
    again = await client.post(f"/api/chats/{chat_id}/read", json={}, headers=auth_headers(vendor))
    assert read.json() == {"updated": 3}
    assert again.json() == {"updated": 0}


@pytest.mark.asyncio
async def test_blocked_chat_rejects_messages(client, auth_headers, buyer, vendor, listing):
    chat_id = (await _open_chat(client, auth_headers, buyer, listing))["chat"]["id"]

    blocked = await client.patch(
        f"/api/chats/{chat_id}/status",
        json={"status": "BLOCKED"},
        headers=auth_headers(vendor),
    )
    response = await client.post(
        f"/api/chats/{chat_id}/messages",
        json={"content": "hello?"},
        headers=auth_headers(buyer),
    )

    assert blocked.json()["status"] == "BLOCKED"
    assert response.status_code == 409
    assert response.json()["code"] == "chat_blocked"


@pytest.mark.asyncio
async def test_empty_message_is_rejected(client, auth_headers, buyer, listing):
    chat_id = (await _open_chat(client, auth_headers, buyer, listing))["chat"]["id"]

    response = await client.post(
        f"/api/chats/{chat_id}/messages",
        json={"content": "   "},
        headers=auth_headers(buyer),
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_offer_accept_flow(client, auth_headers, buyer, vendor, listing):
    chat_id = (await _open_chat(client, auth_headers, buyer, listing))["chat"]["id"]

    offer = await client.post(
        f"/api/chats/{chat_id}/offers",
        json={"amount": "150.00", "notes": "Cash today"},
        headers=auth_headers(buyer),
    )
    assert offer.status_code == 201
    offer_id = offer.json()["id"]
    assert offer.json()["message_type"] == "OFFER"

    accepted = await client.post(
        f"/api/chats/{chat_id}/offers/{offer_id}/respond",
        json={"decision": "ACCEPT"},
        headers=auth_headers(vendor),
    )
    assert accepted.status_code == 200
    body = accepted.json()
    assert body["response_message"]["message_type"] == "OFFER_ACCEPTED"
    assert body["original_offer"]["id"] == offer_id
    assert body["action_required"] == "create_transaction"
    assert body["transaction_id"] is None

    offers = await client.get(f"/api/chats/{chat_id}/offers", headers=auth_headers(buyer))
    [view] = offers.json()
    assert view["state"] == "ACCEPTED"
    assert view["response_message_id"] == body["response_message"]["id"]


@pytest.mark.asyncio
async def test_second_response_conflicts(client, auth_headers, buyer, vendor, listing):
    chat_id = (await _open_chat(client, auth_headers, buyer, listing))["chat"]["id"]
    offer_id = (await client.post(
        f"/api/chats/{chat_id}/offers",
        json={"amount": "150"},
        headers=auth_headers(buyer),
    )).json()["id"]
    url = f"/api/chats/{chat_id}/offers/{offer_id}/respond"

    await client.post(url, json={"decision": "REJECT"}, headers=auth_headers(vendor))
    response = await client.post(url, json={"decision": "ACCEPT"}, headers=auth_headers(vendor))

    assert response.status_code == 409
    data = response.json()
    assert data["code"] == "offer_already_resolved"
    assert data["context"]["resolution"] == "REJECTED"


@pytest.mark.asyncio
async def test_buyer_cannot_accept_own_offer(client, auth_headers, buyer, listing):
    chat_id = (await _open_chat(client, auth_headers, buyer, listing))["chat"]["id"]
    offer_id = (await client.post(
        f"/api/chats/{chat_id}/offers",
        json={"amount": "150"},
        headers=auth_headers(buyer),
    )).json()["id"]

    response = await client.post(
        f"/api/chats/{chat_id}/offers/{offer_id}/respond",
        json={"decision": "ACCEPT"},
        headers=auth_headers(buyer),
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_invalid_decision_is_422(client, auth_headers, buyer, listing):
    chat_id = (await _open_chat(client, auth_headers, buyer, listing))["chat"]["id"]

    response = await client.post(
        f"/api/chats/{chat_id}/offers/1/respond",
        json={"decision": "MAYBE"},
        headers=auth_headers(buyer),
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_edit_and_delete_message(client, auth_headers, buyer, vendor, listing):
    chat_id = (await _open_chat(client, auth_headers, buyer, listing))["chat"]["id"]
    message_id = (await client.post(
        f"/api/chats/{chat_id}/messages",
        json={"content": "typo hree"},
        headers=auth_headers(buyer),
    )).json()["id"]

    forbidden = await client.patch(
        f"/api/messages/{message_id}",
        json={"content": "hijack"},
        headers=auth_headers(vendor),
    )
    edited = await client.patch(
        f"/api/messages/{message_id}",
        json={"content": "typo here"},
        headers=auth_headers(buyer),
    )
    deleted = await client.delete(f"/api/messages/{message_id}", headers=auth_headers(buyer))

    assert forbidden.status_code == 403
    assert edited.json()["content"] == "typo here"
    assert edited.json()["edited_at"] is not None
    assert deleted.status_code == 200
    assert deleted.json()["is_deleted"] is True
    assert deleted.json()["content"] == "[Message deleted]"


@pytest.mark.asyncio
async def test_search_messages(client, auth_headers, buyer, vendor, listing):
    chat_id = (await _open_chat(client, auth_headers, buyer, listing))["chat"]["id"]
    await client.post(f"/api/chats/{chat_id}/messages", json={"content": "Does the lens work?"}, headers=auth_headers(buyer))
    await client.post(f"/api/chats/{chat_id}/messages", json={"content": "Yes, no scratches"}, headers=auth_headers(vendor))

    response = await client.get("/api/chats/search", params={"q": "LENS"}, headers=auth_headers(vendor))

    assert response.status_code == 200
    assert [m["content"] for m in response.json()["results"]] == ["Does the lens work?"]


@pytest.mark.asyncio
async def test_archive_listing_chats_is_admin_only(client, auth_headers, buyer, admin, listing):
    chat_id = (await _open_chat(client, auth_headers, buyer, listing))["chat"]["id"]
    url = f"/api/chats/listings/{listing.id}/archive"

    denied = await client.post(url, headers=auth_headers(buyer))
    allowed = await client.post(url, headers=auth_headers(admin))
    chat = await client.get(f"/api/chats/{chat_id}", headers=auth_headers(buyer))

    assert denied.status_code == 403
    assert allowed.json() == {"listing_id": listing.id, "archived": 1}
    assert chat.json()["status"] == "ARCHIVED"


@pytest.mark.asyncio
async def test_response_carries_request_id(client):
    response = await client.get("/api/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"

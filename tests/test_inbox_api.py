from datetime import datetime, timedelta

from social_inbox.config import settings
from social_inbox.models import Seller
from social_inbox.services import ledger_service, lock_service
from social_inbox.services.errors import UpstreamError
from social_inbox.services.ledger_service import NewMessage
from social_inbox.timeutils import utc_now

from conftest import ADMIN_HEADERS, FB_PAGE, IG_PAGE, seller_headers

FB_CONVERSATION = f"{FB_PAGE}_5551234567"
IG_CONVERSATION = f"{IG_PAGE}_778899"


def seed_customer_message(db, conversation_id=FB_CONVERSATION, text="hello", minutes_ago=5, platform="facebook"):
    page_id, _, _ = conversation_id.partition("_")
    return ledger_service.append(
        db,
        NewMessage(
            conversation_id=conversation_id,
            sender="customer",
            message=text,
            platform=platform,
            page_id=page_id,
            customer_name="Alice",
            sender_name="Alice",
            timestamp=utc_now() - timedelta(minutes=minutes_ago),
        ),
    )


def add_seller(db, seller_id="A", name="Aigerim"):
    db.add(Seller(id=seller_id, name=name, email=f"{seller_id.lower()}@example.com"))
    db.commit()


class TestAuth:
    def test_missing_credentials_is_401(self, client):
        assert client.get("/conversations").status_code == 401

    def test_wrong_admin_key_without_seller_is_401(self, client):
        assert client.get("/conversations", headers={"X-Admin-Key": "nope"}).status_code == 401


class TestConversations:
    def test_admin_sees_everything(self, client, db_session):
        seed_customer_message(db_session)
        seed_customer_message(db_session, "100_other", text="second", minutes_ago=1)
        lock_service.claim(db_session, "100_other", "B")

        response = client.get("/conversations", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        items = response.json()
        assert [item["conversationId"] for item in items] == ["100_other", FB_CONVERSATION]
        assert items[0]["assignedSellerId"] == "B"
        assert items[1]["isUnread"] is True
        assert items[1]["unreadCount"] == 1

    def test_seller_sees_own_and_unowned_only(self, client, db_session):
        seed_customer_message(db_session)
        seed_customer_message(db_session, "100_mine", minutes_ago=2)
        seed_customer_message(db_session, "100_theirs", minutes_ago=1)
        lock_service.claim(db_session, "100_mine", "A")
        lock_service.claim(db_session, "100_theirs", "B")

        items = client.get("/conversations", headers=seller_headers("A")).json()

        assert sorted(item["conversationId"] for item in items) == sorted([FB_CONVERSATION, "100_mine"])


class TestMessages:
    def test_history_without_mark_read_keeps_unread(self, client, db_session):
        seed_customer_message(db_session)

        response = client.get(f"/messages/{FB_CONVERSATION}", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert [m["message"] for m in body["data"]] == ["hello"]
        assert body["readAt"] is None
        assert ledger_service.unread_count(db_session, FB_CONVERSATION, "admin") == 1

    def test_mark_read_param_clears_unread(self, client, db_session):
        seed_customer_message(db_session)

        body = client.get(f"/messages/{FB_CONVERSATION}?markRead=1", headers=ADMIN_HEADERS).json()

        assert body["readAt"] is not None
        assert ledger_service.unread_count(db_session, FB_CONVERSATION, "admin") == 0
        # Seller watermark is tracked separately.
        assert ledger_service.unread_count(db_session, FB_CONVERSATION, "seller") == 1

    def test_locked_conversation_is_403_for_other_seller(self, client, db_session):
        seed_customer_message(db_session)
        lock_service.claim(db_session, FB_CONVERSATION, "A")

        response = client.get(f"/messages/{FB_CONVERSATION}", headers=seller_headers("B"))

        assert response.status_code == 403
        assert response.json()["detail"] == "Forbidden (conversation locked)"

    def test_receipts_are_reported(self, client, db_session, receipts):
        seed_customer_message(db_session)
        receipts.record_receipt(db_session, FB_CONVERSATION, "read", datetime(2024, 5, 1, 10, 0))

        body = client.get(f"/messages/{FB_CONVERSATION}", headers=ADMIN_HEADERS).json()

        assert body["customerDeliveredAt"] is None
        assert body["customerReadAt"] == "2024-05-01T10:00:00Z"


class TestReadMarkers:
    def test_mark_read_then_unread(self, client, db_session):
        seed_customer_message(db_session)

        read = client.post(f"/conversations/{FB_CONVERSATION}/mark-read", headers=seller_headers("A")).json()
        assert read == {"conversationId": FB_CONVERSATION, "unreadCount": 0, "isUnread": False, "readAt": read["readAt"]}
        assert read["readAt"].endswith("Z")

        unread = client.post(f"/conversations/{FB_CONVERSATION}/mark-unread", headers=seller_headers("A")).json()
        assert unread["isUnread"] is True
        assert unread["unreadCount"] == 1
        assert unread["readAt"] is None


class TestMeta:
    def test_both_fields_is_400(self, client):
        response = client.patch(
            f"/conversations/{FB_CONVERSATION}/meta",
            json={"sellerId": "A", "deliveryStatus": "hold"},
            headers=ADMIN_HEADERS,
        )
        assert response.status_code == 400

    def test_neither_field_is_400(self, client):
        response = client.patch(f"/conversations/{FB_CONVERSATION}/meta", json={}, headers=ADMIN_HEADERS)
        assert response.status_code == 400

    def test_admin_assigns_and_notifies_both_owners(self, client, db_session, publisher):
        add_seller(db_session, "B", "Bota")
        lock_service.claim(db_session, FB_CONVERSATION, "A")

        response = client.patch(
            f"/conversations/{FB_CONVERSATION}/meta", json={"sellerId": "B"}, headers=ADMIN_HEADERS
        )

        assert response.status_code == 200
        assert response.json()["assignedSellerId"] == "B"
        assert lock_service.get_owner(db_session, FB_CONVERSATION) == "B"
        assert publisher.rooms("conversation_meta") == ["admin", "seller:A", "seller:B"]

    def test_admin_unassigns(self, client, db_session):
        lock_service.claim(db_session, FB_CONVERSATION, "A")

        response = client.patch(
            f"/conversations/{FB_CONVERSATION}/meta", json={"sellerId": "unassign"}, headers=ADMIN_HEADERS
        )

        assert response.json()["assignedSellerId"] is None
        assert response.json()["assignedAt"] is None

    def test_unknown_seller_is_404(self, client):
        response = client.patch(
            f"/conversations/{FB_CONVERSATION}/meta", json={"sellerId": "ghost"}, headers=ADMIN_HEADERS
        )
        assert response.status_code == 404

    def test_seller_cannot_assign(self, client, db_session):
        add_seller(db_session, "A")
        response = client.patch(
            f"/conversations/{FB_CONVERSATION}/meta", json={"sellerId": "A"}, headers=seller_headers("A")
        )
        assert response.status_code == 403

    def test_seller_sets_delivery_status(self, client, db_session):
        lock_service.claim(db_session, FB_CONVERSATION, "A")

        response = client.patch(
            f"/conversations/{FB_CONVERSATION}/meta", json={"deliveryStatus": "Hold"}, headers=seller_headers("A")
        )

        assert response.status_code == 200
        assert response.json()["deliveryStatus"] == "hold"

    def test_status_on_foreign_conversation_is_403(self, client, db_session):
        lock_service.claim(db_session, FB_CONVERSATION, "A")
        response = client.patch(
            f"/conversations/{FB_CONVERSATION}/meta", json={"deliveryStatus": "hold"}, headers=seller_headers("B")
        )
        assert response.status_code == 403

    def test_unknown_status_is_400(self, client):
        response = client.patch(
            f"/conversations/{FB_CONVERSATION}/meta", json={"deliveryStatus": "lost"}, headers=seller_headers("A")
        )
        assert response.status_code == 400


class TestManualReply:
    def test_agent_reply_sends_then_records(self, client, db_session, graph, publisher):
        seed_customer_message(db_session)

        response = client.post(
            "/manual-reply",
            json={"conversationId": FB_CONVERSATION, "message": " on it "},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["message"] == "on it"
        assert data["sender"] == "bot"
        assert data["senderRole"] == "admin"
        assert data["senderName"] == "Admin"
        graph.send_text.assert_awaited_once_with("facebook", FB_PAGE, "5551234567", "on it", "fb-token")
        assert publisher.rooms("new_message") == ["admin", "sellers"]

    def test_send_failure_records_nothing(self, client, db_session, graph):
        seed_customer_message(db_session)
        graph.send_text.side_effect = UpstreamError("Graph API error")

        response = client.post(
            "/manual-reply", json={"conversationId": FB_CONVERSATION, "message": "hi"}, headers=ADMIN_HEADERS
        )

        assert response.status_code == 500
        assert len(ledger_service.list_by_conversation(db_session, FB_CONVERSATION)) == 1

    def test_customer_mode_never_calls_platform(self, client, db_session, graph):
        seed_customer_message(db_session)

        response = client.post(
            "/manual-reply",
            json={"conversationId": FB_CONVERSATION, "message": "note", "sendAs": "customer"},
            headers=ADMIN_HEADERS,
        )

        data = response.json()["data"]
        assert data["sender"] == "customer"
        assert data["senderName"] == "Alice"
        graph.send_text.assert_not_awaited()

    def test_reply_to_agent_message_speaks_as_customer(self, client, db_session, graph):
        seed_customer_message(db_session)
        agent = client.post(
            "/manual-reply", json={"conversationId": FB_CONVERSATION, "message": "hi"}, headers=ADMIN_HEADERS
        ).json()["data"]
        graph.send_text.reset_mock()

        response = client.post(
            "/manual-reply",
            json={"conversationId": FB_CONVERSATION, "message": "quoted", "replyToMessageId": agent["id"]},
            headers=ADMIN_HEADERS,
        )

        data = response.json()["data"]
        assert data["sender"] == "customer"
        assert data["replyToMessageId"] == str(agent["id"])
        graph.send_text.assert_not_awaited()

    def test_reply_to_customer_message_overrides_send_as(self, client, db_session, graph):
        customer = seed_customer_message(db_session)

        response = client.post(
            "/manual-reply",
            json={
                "conversationId": FB_CONVERSATION,
                "message": "answer",
                "sendAs": "customer",
                "replyToMessageId": customer.id,
            },
            headers=ADMIN_HEADERS,
        )

        assert response.json()["data"]["sender"] == "bot"
        graph.send_text.assert_awaited_once()

    def test_seller_reply_claims_unowned_conversation(self, client, db_session, publisher):
        seed_customer_message(db_session)
        add_seller(db_session, "A", "Aigerim")

        response = client.post(
            "/manual-reply",
            json={"conversationId": FB_CONVERSATION, "message": "mine"},
            headers=seller_headers("A"),
        )

        assert response.status_code == 200
        assert response.json()["data"]["senderName"] == "Aigerim"
        assert lock_service.get_owner(db_session, FB_CONVERSATION) == "A"
        assert publisher.rooms("new_message") == ["admin", "seller:A"]

    def test_seller_reply_on_locked_conversation_is_403(self, client, db_session, graph):
        seed_customer_message(db_session)
        lock_service.claim(db_session, FB_CONVERSATION, "A")

        response = client.post(
            "/manual-reply",
            json={"conversationId": FB_CONVERSATION, "message": "mine"},
            headers=seller_headers("B"),
        )

        assert response.status_code == 403
        graph.send_text.assert_not_awaited()

    def test_missing_token_is_400(self, client, db_session):
        seed_customer_message(db_session, "999_123")

        response = client.post(
            "/manual-reply", json={"conversationId": "999_123", "message": "hi"}, headers=ADMIN_HEADERS
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Page token not found"

    def test_invalid_conversation_id_is_400(self, client):
        response = client.post(
            "/manual-reply", json={"conversationId": "nounderscore", "message": "hi"}, headers=ADMIN_HEADERS
        )
        assert response.status_code == 400


class TestMediaReply:
    def test_images_become_one_gallery_bubble(self, client, db_session, graph, upload_dir):
        seed_customer_message(db_session)

        response = client.post(
            "/manual-media-reply",
            data={"conversationId": FB_CONVERSATION},
            files=[
                ("files", ("a.jpg", b"\xff\xd8jpeg", "image/jpeg")),
                ("files", ("b.png", b"\x89PNG", "image/png")),
            ],
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        lines = response.json()["data"]["message"].split("\n")
        assert lines[0] == "📷 Images:"
        assert len(lines) == 3
        assert all(line.startswith("/uploads/") for line in lines[1:])
        assert graph.upload_attachment.await_count == 2
        assert graph.send_attachment_by_id.await_count == 2
        assert len(list(upload_dir.iterdir())) == 2

    def test_single_video_via_file_field(self, client, db_session):
        seed_customer_message(db_session)

        response = client.post(
            "/manual-media-reply",
            data={"conversationId": FB_CONVERSATION},
            files={"file": ("clip.mp4", b"video", "video/mp4")},
            headers=ADMIN_HEADERS,
        )

        assert response.json()["data"]["message"].startswith("🎥 Video: /uploads/")

    def test_instagram_uses_public_url(self, client, db_session, graph):
        seed_customer_message(db_session, IG_CONVERSATION, platform="instagram")

        client.post(
            "/manual-media-reply",
            data={"conversationId": IG_CONVERSATION},
            files={"file": ("a.jpg", b"jpeg", "image/jpeg")},
            headers=ADMIN_HEADERS,
        )

        args = graph.send_instagram_attachment.await_args.args
        assert args[:3] == (IG_PAGE, "778899", "image")
        assert args[3].startswith("https://inbox.example.com/uploads/")
        graph.upload_attachment.assert_not_awaited()

    def test_partial_failure_still_lists_every_file(self, client, db_session, graph):
        seed_customer_message(db_session)
        graph.send_attachment_by_id.side_effect = [UpstreamError("boom"), {}]

        response = client.post(
            "/manual-media-reply",
            data={"conversationId": FB_CONVERSATION},
            files=[
                ("files", ("a.jpg", b"jpeg", "image/jpeg")),
                ("files", ("doc.pdf", b"%PDF", "application/pdf")),
            ],
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        message = response.json()["data"]["message"]
        assert message.startswith("📎 Attachments:\n")
        assert len(message.split("\n")) == 3

    def test_no_files_is_400(self, client, db_session):
        seed_customer_message(db_session)
        response = client.post(
            "/manual-media-reply", data={"conversationId": FB_CONVERSATION}, headers=ADMIN_HEADERS
        )
        assert response.status_code == 400


class TestForward:
    def test_plain_text_is_forwarded_as_text(self, client, db_session, graph):
        seed_customer_message(db_session)

        response = client.post(
            "/forward-message",
            json={"targetConversationId": FB_CONVERSATION, "message": "see you at 5"},
            headers=ADMIN_HEADERS,
        )

        body = response.json()
        assert body["success"] is True
        assert body["forwardedAsText"] is True
        assert body["data"]["message"] == "see you at 5"
        graph.send_text.assert_awaited_once()

    def test_stored_upload_is_resent_as_attachment(self, client, db_session, graph, upload_dir):
        seed_customer_message(db_session)
        (upload_dir / "photo.jpg").write_bytes(b"jpeg")

        response = client.post(
            "/forward-message",
            json={"targetConversationId": FB_CONVERSATION, "message": "📷 Image: /uploads/photo.jpg"},
            headers=ADMIN_HEADERS,
        )

        body = response.json()
        assert body["forwardedAsText"] is False
        assert body["data"]["message"] == "📷 Image: /uploads/photo.jpg"
        graph.upload_attachment.assert_awaited_once()
        graph.send_text.assert_not_awaited()

    def test_remote_url_is_sent_by_url(self, client, db_session, graph):
        seed_customer_message(db_session)

        response = client.post(
            "/forward-message",
            json={"targetConversationId": FB_CONVERSATION, "message": "https://cdn.example.com/v/clip.mp4"},
            headers=ADMIN_HEADERS,
        )

        assert response.json()["data"]["message"] == "🎥 Video: https://cdn.example.com/v/clip.mp4"
        graph.send_attachment_by_url.assert_awaited_once_with(
            "5551234567", "video", "https://cdn.example.com/v/clip.mp4", "fb-token"
        )

    def test_forward_respects_seller_lock(self, client, db_session):
        seed_customer_message(db_session)
        lock_service.claim(db_session, FB_CONVERSATION, "A")

        response = client.post(
            "/forward-message",
            json={"targetConversationId": FB_CONVERSATION, "message": "hi"},
            headers=seller_headers("B"),
        )

        assert response.status_code == 403


class TestRequestValidation:
    def test_manual_reply_without_conversation_is_400(self, client):
        response = client.post("/manual-reply", json={"message": "hi"}, headers=ADMIN_HEADERS)
        assert response.status_code == 400
        assert response.json()["detail"] == "conversationId and message required"

    def test_forward_without_target_is_400(self, client):
        response = client.post("/forward-message", json={"message": "hi"}, headers=ADMIN_HEADERS)
        assert response.status_code == 400
        assert response.json()["detail"] == "targetConversationId and message required"


class TestUploadLimits:
    def test_oversized_file_is_rejected_and_removed(self, client, db_session, graph, upload_dir, monkeypatch):
        seed_customer_message(db_session)
        monkeypatch.setattr(settings, "media_max_bytes", 10)

        response = client.post(
            "/manual-media-reply",
            data={"conversationId": FB_CONVERSATION},
            files=[
                ("files", ("small.jpg", b"ok", "image/jpeg")),
                ("files", ("big.jpg", b"x" * 1000, "image/jpeg")),
            ],
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 400
        assert list(upload_dir.iterdir()) == []
        graph.upload_attachment.assert_not_awaited()
        assert len(ledger_service.list_by_conversation(db_session, FB_CONVERSATION)) == 1

    def test_more_than_ten_files_is_400(self, client, db_session, graph):
        seed_customer_message(db_session)

        response = client.post(
            "/manual-media-reply",
            data={"conversationId": FB_CONVERSATION},
            files=[("files", (f"{i}.jpg", b"jpeg", "image/jpeg")) for i in range(11)],
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 400
        graph.upload_attachment.assert_not_awaited()

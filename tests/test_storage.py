"""
Tests for the data store and conversation resolver.

Tests cover:
- Case-insensitive user lookups
- Listing filters without API defaults
- Conversation lookup symmetry and listing scope
- One conversation per pair under concurrent resolves and sends
- last_message_at monotonicity
- Read flag transitions
"""

import asyncio
import threading
from datetime import timedelta

import bcrypt

from bookxchange import storage
from bookxchange.messaging import mark_read, resolve_conversation, send_message
from bookxchange.models import Conversation
from bookxchange.realtime import ConnectionManager
from bookxchange.schemas import ListingFilters
from bookxchange.storage import SessionLocal
from bookxchange.utils import hash_password, utc_now


def make_user(db, username: str):
    return storage.create_user(db, username, f"{username}@example.com", hash_password("secret123"))


def make_listing(db, owner, **overrides):
    fields = {
        "user_id": owner.id,
        "title": "Introduction to Algorithms",
        "author": "Cormen",
        "category": "Computer Science",
        "condition": "Good",
        "description": "Third edition",
        "price": "45.00",
        "listing_type": "sell",
        "location": "Boston",
    }
    fields.update(overrides)
    return storage.create_book_listing(db, **fields)


class TestUsers:
    """Test user operations."""

    def test_lookup_by_username_ignores_case(self, db):
        user = make_user(db, "Alice")

        assert storage.get_user_by_username(db, "alice").id == user.id
        assert storage.get_user_by_username(db, "ALICE").id == user.id
        assert storage.get_user_by_username(db, "alic") is None

    def test_lookup_by_email_ignores_case(self, db):
        user = make_user(db, "bob")

        assert storage.get_user_by_email(db, "BOB@Example.com").id == user.id

    def test_password_is_hashed(self, db):
        user = make_user(db, "carol")

        assert user.password != "secret123"
        assert user.password.startswith("$2")
        assert bcrypt.checkpw(b"secret123", user.password.encode("utf-8"))
        assert not bcrypt.checkpw(b"wrong", user.password.encode("utf-8"))

    def test_same_password_gets_distinct_salts(self, db):
        first = make_user(db, "carol")
        second = make_user(db, "dave")

        assert first.password != second.password

    def test_long_password_hashes(self):
        hashed = hash_password("x" * 100)

        assert bcrypt.checkpw(b"x" * 72, hashed.encode("utf-8"))


class TestListings:
    """Test listing operations below the API defaults."""

    def test_no_filters_returns_every_status(self, db):
        owner = make_user(db, "alice")
        make_listing(db, owner)
        make_listing(db, owner, status="sold")
        deleted = make_listing(db, owner)
        storage.delete_book_listing(db, deleted.id)

        assert len(storage.get_book_listings(db)) == 3
        assert len(storage.get_book_listings(db, ListingFilters())) == 3

    def test_soft_delete_preserves_fields(self, db):
        owner = make_user(db, "alice")
        listing = make_listing(db, owner)

        assert storage.delete_book_listing(db, listing.id) is True

        reloaded = storage.get_book_listing(db, listing.id)
        assert reloaded.status == "deleted"
        assert reloaded.title == "Introduction to Algorithms"
        assert storage.get_book_listings(db, ListingFilters(status="active")) == []

    def test_delete_missing_listing(self, db):
        assert storage.delete_book_listing(db, 123) is False

    def test_update_missing_listing(self, db):
        assert storage.update_book_listing(db, 123, {"price": "1"}) is None


class TestConversationResolver:
    """Test resolve_conversation uniqueness and scope."""

    def test_order_independent(self, db):
        alice, bob = make_user(db, "alice"), make_user(db, "bob")

        first = resolve_conversation(db, alice.id, bob.id)
        second = resolve_conversation(db, bob.id, alice.id)

        assert first.id == second.id
        assert storage.get_conversations_by_user(db, alice.id) == [first]

    def test_concurrent_resolves_create_one_conversation(self, db):
        """Threads racing on the same pair and scope share a single conversation."""
        alice, bob = make_user(db, "alice"), make_user(db, "bob")
        book = make_listing(db, bob)
        alice_id, bob_id, book_id = alice.id, bob.id, book.id
        workers = 8
        barrier = threading.Barrier(workers)
        resolved, errors = [], []

        def worker(index):
            session = SessionLocal()
            try:
                pair = (alice_id, bob_id) if index % 2 else (bob_id, alice_id)
                barrier.wait()
                resolved.append(resolve_conversation(session, *pair, book_id).id)
            except Exception as exc:
                errors.append(exc)
            finally:
                session.close()

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(resolved) == workers
        assert len(set(resolved)) == 1
        assert db.query(Conversation).count() == 1

    def test_concurrent_sends_share_one_conversation(self, db):
        """Concurrent first messages between a pair land in one conversation."""
        alice, bob = make_user(db, "alice"), make_user(db, "bob")
        alice_id, bob_id = alice.id, bob.id
        connections = ConnectionManager()
        workers = 6
        barrier = threading.Barrier(workers)
        errors = []

        def worker(index):
            session = SessionLocal()
            try:
                sender, receiver = (alice_id, bob_id) if index % 2 else (bob_id, alice_id)
                barrier.wait()
                asyncio.run(send_message(session, connections, sender, receiver, f"msg {index}"))
            except Exception as exc:
                errors.append(exc)
            finally:
                session.close()

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        conversations = db.query(Conversation).all()
        assert len(conversations) == 1
        assert len(storage.get_messages(db, conversations[0].id)) == workers

    def test_listing_scope(self, db):
        alice, bob = make_user(db, "alice"), make_user(db, "bob")
        book42 = make_listing(db, bob)
        book99 = make_listing(db, bob)

        scoped = resolve_conversation(db, alice.id, bob.id, book42.id)
        other = resolve_conversation(db, alice.id, bob.id, book99.id)
        unscoped = resolve_conversation(db, alice.id, bob.id)

        assert len({scoped.id, other.id, unscoped.id}) == 3
        assert resolve_conversation(db, bob.id, alice.id, book42.id).id == scoped.id
        assert storage.get_conversation_by_users(db, alice.id, bob.id, book42.id).id == scoped.id

    def test_new_conversation_has_timestamp(self, db):
        alice, bob = make_user(db, "alice"), make_user(db, "bob")
        before = utc_now()

        conversation = resolve_conversation(db, alice.id, bob.id)

        assert conversation.last_message_at >= before

    def test_last_message_time_never_goes_back(self, db):
        alice, bob = make_user(db, "alice"), make_user(db, "bob")
        conversation = resolve_conversation(db, alice.id, bob.id)
        future = utc_now() + timedelta(hours=1)
        conversation.last_message_at = future
        db.commit()

        assert storage.update_conversation_last_message_time(db, conversation.id) is True
        assert storage.get_conversation(db, conversation.id).last_message_at == future

    def test_update_missing_conversation(self, db):
        assert storage.update_conversation_last_message_time(db, 77) is False


class TestMessageService:
    """Test send_message and mark_read against the store."""

    def test_scenario_reply_reuses_conversation(self, db):
        """User 1 asks about listing, user 2 replies: one conversation, two messages."""
        alice, bob = make_user(db, "alice"), make_user(db, "bob")
        listing = make_listing(db, bob)
        connections = ConnectionManager()

        question, delivered = asyncio.run(
            send_message(db, connections, alice.id, bob.id, "Is this available?", listing.id)
        )
        conversation = storage.get_conversation(db, question.conversation_id)
        first_bump = conversation.last_message_at
        answer, _ = asyncio.run(send_message(db, connections, bob.id, alice.id, "Yes", listing.id))

        assert delivered is False
        assert (conversation.user1_id, conversation.user2_id, conversation.listing_id) == (
            alice.id, bob.id, listing.id
        )
        assert answer.conversation_id == conversation.id
        assert storage.get_conversation(db, conversation.id).last_message_at >= first_bump
        assert [m.content for m in storage.get_messages(db, conversation.id)] == ["Is this available?", "Yes"]

    def test_messages_by_user(self, db):
        alice, bob, carol = make_user(db, "alice"), make_user(db, "bob"), make_user(db, "carol")
        connections = ConnectionManager()
        asyncio.run(send_message(db, connections, alice.id, bob.id, "a->b"))
        asyncio.run(send_message(db, connections, carol.id, alice.id, "c->a"))
        asyncio.run(send_message(db, connections, bob.id, carol.id, "b->c"))

        contents = [m.content for m in storage.get_messages_by_user(db, alice.id)]

        assert contents == ["a->b", "c->a"]

    def test_unknown_conversation_has_no_messages(self, db):
        assert storage.get_messages(db, 404) == []

    def test_mark_read_idempotent(self, db):
        alice, bob = make_user(db, "alice"), make_user(db, "bob")
        message, _ = asyncio.run(send_message(db, ConnectionManager(), alice.id, bob.id, "hi"))

        assert mark_read(db, message.id) is True
        assert mark_read(db, message.id) is True
        assert storage.get_message(db, message.id).read is True
        assert storage.count_unread_messages(db, bob.id) == 0

    def test_mark_read_missing(self, db):
        assert mark_read(db, 1) is False

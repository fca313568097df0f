"""Tests for the SQLite store."""
import pytest

from feed_to_podcast.errors import PersistenceError
from feed_to_podcast.models import QUEUE_FAILED, QUEUE_PENDING, QUEUE_PROCESSING


def _feed_with_article(db, link="https://example.com/a", pub_date="2025-01-02T10:00:00+00:00"):
    feed = db.save_feed("https://example.com/feed.xml", title="Example")
    article_id, _ = db.save_article(feed.id, "Title", link, pub_date)
    return feed, article_id


def test_database_creates_tables(db):
    """All five tables exist after init."""
    rows = db._query("SELECT name FROM sqlite_master WHERE type='table'")
    names = {r[0] for r in rows}
    assert {"feeds", "articles", "episodes", "tts_queue", "feed_requests"} <= names


def test_duplicate_link_keeps_one_article(db):
    """Second insert with the same link returns the first id."""
    feed = db.save_feed("https://example.com/feed.xml")
    first_id, created = db.save_article(feed.id, "T", "L", "2025-01-01T00:00:00+00:00")
    second_id, created_again = db.save_article(feed.id, "T again", "L", "2025-01-01T00:00:00+00:00")

    assert created is True
    assert created_again is False
    assert second_id == first_id
    assert len(db.list_articles(feed.id)) == 1


def test_unprocessed_articles_skip_inactive_feeds_and_order_by_date(db):
    active = db.save_feed("https://a.example.com/rss")
    inactive = db.save_feed("https://b.example.com/rss", active=False)
    old_id, _ = db.save_article(active.id, "old", "https://a/1", "2025-01-01T00:00:00+00:00")
    new_id, _ = db.save_article(active.id, "new", "https://a/2", "2025-01-03T00:00:00+00:00")
    db.save_article(inactive.id, "hidden", "https://b/1", "2025-01-04T00:00:00+00:00")
    done_id, _ = db.save_article(active.id, "done", "https://a/3", "2025-01-05T00:00:00+00:00")
    db.save_episode(done_id, "done", "done.mp3", mark_processed=True)

    articles = db.get_unprocessed_articles(limit=10)

    assert [a.id for a in articles] == [new_id, old_id]


def test_unprocessed_articles_since_and_limit(db):
    feed = db.save_feed("https://a.example.com/rss")
    db.save_article(feed.id, "old", "https://a/1", "2025-01-01T00:00:00+00:00")
    recent_id, _ = db.save_article(feed.id, "new", "https://a/2", "2025-01-03T00:00:00+00:00")
    db.save_article(feed.id, "newer", "https://a/3", "2025-01-04T00:00:00+00:00")

    since = db.get_unprocessed_articles(since="2025-01-02T00:00:00+00:00")
    limited = db.get_unprocessed_articles(limit=1)

    assert {a.title for a in since} == {"new", "newer"}
    assert len(limited) == 1
    assert limited[0].title == "newer"
    assert recent_id in {a.id for a in since}


def test_save_episode_marks_article_processed(db):
    _, article_id = _feed_with_article(db)

    ep = db.save_episode(article_id, "Tech: Title", "x.mp3", file_size=10, mark_processed=True)

    assert db.get_article(article_id).processed is True
    assert db.get_episode_for_article(article_id).id == ep.id


def test_save_episode_rejects_missing_audio_path(db):
    _, article_id = _feed_with_article(db)

    with pytest.raises(PersistenceError):
        db.save_episode(article_id, "Title", "", mark_processed=True)

    assert db.get_article(article_id).processed is False
    assert db.list_episodes() == []


def test_save_episode_for_unknown_article_rolls_back(db):
    with pytest.raises(PersistenceError):
        db.save_episode("no-such-article", "Title", "x.mp3", mark_processed=True)
    assert db.list_episodes() == []


def test_delete_feed_cascades_and_returns_audio(db):
    feed, article_id = _feed_with_article(db)
    db.save_episode(article_id, "Title", "abc.mp3")
    other_feed = db.save_feed("https://other.example.com/rss")
    other_id, _ = db.save_article(other_feed.id, "Other", "https://other.example.com/1", "2025-01-01T00:00:00+00:00")
    db.enqueue_tts(article_id, "script")
    kept = db.enqueue_tts(other_id, "other script")

    existed, audio = db.delete_feed(feed.id)

    assert existed is True
    assert audio == ["abc.mp3"]
    assert db.get_feed(feed.id) is None
    assert db.get_article(article_id) is None
    assert db.list_episodes() == []
    assert [q.id for q in db.list_queue_items()] == [kept]


def test_delete_unknown_feed(db):
    assert db.delete_feed("missing") == (False, [])


def test_episodes_with_articles_join(db):
    feed, article_id = _feed_with_article(db)
    db.save_episode(article_id, "Title", "abc.mp3")

    details = db.list_episodes_with_articles()

    assert len(details) == 1
    assert details[0].article.id == article_id
    assert details[0].feed.id == feed.id
    assert details[0].feed.active is True


def test_queue_rows_oldest_first_and_status_updates(db):
    first = db.enqueue_tts("item-1", "script one")
    second = db.enqueue_tts("item-2", "script two", retry_count=1)

    pending = db.get_pending_queue_items(10)
    assert [q.id for q in pending] == [first, second]
    assert pending[1].retry_count == 1

    db.update_queue_item(first, QUEUE_FAILED)
    db.update_queue_item(second, QUEUE_PENDING, retry_count=2)

    assert db.get_queue_item(first).status == QUEUE_FAILED
    assert db.get_queue_item(first).last_attempted_at is not None
    assert db.get_queue_item(second).retry_count == 2
    assert [q.id for q in db.get_pending_queue_items(10)] == [second]


def test_update_queue_item_rejects_unknown_status(db):
    qid = db.enqueue_tts("item-1", "script")
    with pytest.raises(ValueError):
        db.update_queue_item(qid, "done")


def test_reset_stale_processing(db):
    qid = db.enqueue_tts("item-1", "script")
    db.update_queue_item(qid, QUEUE_PROCESSING)

    assert db.reset_stale_processing() == 1
    assert db.get_queue_item(qid).status == QUEUE_PENDING


def test_feed_request_review_only_once(db):
    req = db.submit_feed_request("https://example.com/rss", requested_by="reader")

    assert db.review_feed_request(req.id, "approved", reviewed_by="admin") is True
    assert db.review_feed_request(req.id, "rejected") is False
    assert db.get_feed_request(req.id).status == "approved"
    assert [r.id for r in db.list_feed_requests("approved")] == [req.id]
    with pytest.raises(ValueError):
        db.review_feed_request(req.id, "pending")


def test_stable_item_id_is_deterministic():
    from feed_to_podcast.storage import stable_item_id

    assert stable_item_id("https://example.com/a") == stable_item_id("https://example.com/a")
    assert stable_item_id(None, "Title") == stable_item_id("", "Title")
    assert stable_item_id("https://example.com/a") != stable_item_id("https://example.com/b")
    with pytest.raises(ValueError):
        stable_item_id("", "")


def test_article_id_survives_rediscovery(db):
    from feed_to_podcast.storage import stable_item_id

    feed, article_id = _feed_with_article(db)
    db.delete_feed(feed.id)
    _, again_id = _feed_with_article(db)

    assert article_id == again_id == stable_item_id("https://example.com/a")


def test_stats_counts(db):
    feed, article_id = _feed_with_article(db)
    db.save_feed("https://other.example.com/rss", active=False)
    db.save_episode(article_id, "Title", "x.mp3", mark_processed=True)
    db.enqueue_tts("item", "script")
    db.submit_feed_request("https://req.example.com/rss")

    s = db.stats()

    assert s["total_feeds"] == 2
    assert s["active_feeds"] == 1
    assert s["inactive_feeds"] == 1
    assert s["processed_articles"] == 1
    assert s["total_episodes"] == 1
    assert s["tts_queue"]["pending"] == 1
    assert s["pending_feed_requests"] == 1

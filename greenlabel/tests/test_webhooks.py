import json
import time

from greenlabel.cms import REVALIDATE_TAG_MAP, TaggedCache, get_document
from greenlabel.models import db, CmsDocument, NewsletterSubscriber

from conftest import REVALIDATE_SECRET


def add_document(app, doc_type="service", slug="medical-waste", payload=None, published=True):
    with app.app_context():
        db.session.add(
            CmsDocument(
                doc_type=doc_type,
                slug=slug,
                payload=json.dumps(payload if payload is not None else {"title": "Medical Waste"}),
                is_published=published,
            )
        )
        db.session.commit()


def add_subscriber(app, email="reader@example.com", token="tok-123", active=True):
    with app.app_context():
        db.session.add(NewsletterSubscriber(email=email, unsubscribe_token=token, is_active=active))
        db.session.commit()


def test_revalidate_rejects_wrong_secret(client):
    response = client.post("/api/revalidate?secret=wrong", json={"_type": "service"})

    assert response.status_code == 401
    assert response.get_json() == {"message": "Invalid secret"}


def test_revalidate_rejects_missing_secret(client):
    assert client.post("/api/revalidate", json={"_type": "service"}).status_code == 401


def test_revalidate_maps_type_to_tags_without_csrf(client):
    before = int(time.time() * 1000)
    response = client.post(f"/api/revalidate?secret={REVALIDATE_SECRET}", json={"_type": "blogPost"})

    assert response.status_code == 200
    body = response.get_json()
    assert body["revalidated"] is True
    assert body["tags"] == ["posts", "blog"]
    assert body["now"] >= before


def test_revalidate_unknown_type_invalidates_everything(client):
    response = client.post(f"/api/revalidate?secret={REVALIDATE_SECRET}", json={"_type": "somethingNew"})

    assert response.get_json()["tags"] == ["all"]


def test_revalidate_malformed_body_is_a_server_error(client):
    response = client.post(
        f"/api/revalidate?secret={REVALIDATE_SECRET}",
        data="{not json",
        content_type="application/json",
    )

    assert response.status_code == 500
    assert response.get_json() == {"message": "Error revalidating"}


def test_revalidation_drops_cached_content(app, client):
    add_document(app)
    assert client.get("/api/content/service/medical-waste").get_json() == {"content": {"title": "Medical Waste"}}

    with app.app_context():
        document = CmsDocument.query.one()
        document.payload = json.dumps({"title": "Medical Waste Management"})
        db.session.commit()

    assert client.get("/api/content/service/medical-waste").get_json()["content"]["title"] == "Medical Waste"

    client.post(f"/api/revalidate?secret={REVALIDATE_SECRET}", json={"_type": "service"})

    assert client.get("/api/content/service/medical-waste").get_json()["content"]["title"] == "Medical Waste Management"


def test_missing_or_unpublished_content_is_null(app, client):
    add_document(app, slug="draft", published=False)

    assert client.get("/api/content/service/draft").get_json() == {"content": None}
    assert client.get("/api/content/service/nope").get_json() == {"content": None}


def test_malformed_payload_is_treated_as_missing(app):
    with app.app_context():
        db.session.add(CmsDocument(doc_type="page", slug="about", payload="{broken", is_published=True))
        db.session.commit()
    with app.test_request_context():
        assert get_document("page", "about") is None


def test_tagged_cache_invalidates_only_matching_tags():
    cache = TaggedCache(ttl_seconds=60)
    cache.set(("service", "a"), {"n": 1}, tags=REVALIDATE_TAG_MAP["service"] + ["all"])
    cache.set(("job", "b"), {"n": 2}, tags=REVALIDATE_TAG_MAP["job"] + ["all"])

    assert cache.invalidate_tags(["services"]) == 1
    assert cache.get(("service", "a")) == (False, None)
    assert cache.get(("job", "b")) == (True, {"n": 2})

    assert cache.invalidate_tags(["all"]) == 1
    assert len(cache) == 0


def test_tagged_cache_entries_expire():
    now = [100.0]
    cache = TaggedCache(ttl_seconds=10, clock=lambda: now[0])
    cache.set("key", "value", tags=["pages"])
    now[0] += 11

    assert cache.get("key") == (False, None)


def test_unsubscribe_deactivates_and_confirms(app, client, sent_emails):
    add_subscriber(app)

    response = client.get("/api/newsletter/unsubscribe/tok-123")

    assert response.status_code == 200
    assert "reader@example.com" in response.get_data(as_text=True)
    with app.app_context():
        assert NewsletterSubscriber.query.one().is_active is False
    assert [(email["kind"], email["to"]) for email in sent_emails] == [("user", "reader@example.com")]


def test_unsubscribe_with_unknown_token_redirects(client, sent_emails):
    response = client.get("/api/newsletter/unsubscribe/does-not-exist")

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/?error=invalid-token")
    assert sent_emails == []


def test_unsubscribe_twice_reports_already_unsubscribed(app, client, sent_emails):
    add_subscriber(app, active=False)

    response = client.get("/api/newsletter/unsubscribe/tok-123")

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/?message=already-unsubscribed")
    assert sent_emails == []


def test_home_page_shows_unsubscribe_outcome(client):
    assert "not valid" in client.get("/?error=invalid-token").get_data(as_text=True)
    assert "already unsubscribed" in client.get("/?message=already-unsubscribed").get_data(as_text=True)


def test_health_endpoints(client):
    assert client.get("/healthz").get_json() == {"status": "ok"}
    ready = client.get("/readyz")
    assert ready.status_code == 200
    assert ready.get_json()["checks"]["database"] is True


def test_revalidate_non_object_body_invalidates_everything(client):
    response = client.post(f"/api/revalidate?secret={REVALIDATE_SECRET}", json=[])

    assert response.status_code == 200
    assert response.get_json()["tags"] == ["all"]


def test_tagged_cache_sweeps_expired_entries_on_write():
    now = [100.0]
    cache = TaggedCache(ttl_seconds=10, clock=lambda: now[0], max_entries=10000, sweep_every=50)
    for i in range(49):
        cache.set(("page", i), i, tags=["pages"])
    now[0] += 11

    cache.set(("page", "fresh"), "new", tags=["pages"])

    assert len(cache) == 1
    assert cache.get(("page", "fresh")) == (True, "new")


def test_tagged_cache_never_exceeds_its_size_cap():
    cache = TaggedCache(ttl_seconds=60, max_entries=3)
    for i in range(5):
        cache.set(("page", i), i)

    assert len(cache) == 3
    assert cache.get(("page", 0)) == (False, None)
    assert cache.get(("page", 4)) == (True, 4)


def test_missing_content_lookups_are_not_cached(app, client):
    for i in range(20):
        assert client.get(f"/api/content/page/nope-{i}").get_json() == {"content": None}

    assert len(app.extensions["content_cache"]) == 0

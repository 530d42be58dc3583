import io
import os

from PIL import Image

from greenlabel.models import db, Review, User

from conftest import CSRF_TOKEN, create_user, login


def png_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color=(20, 120, 40)).save(buffer, format="PNG")
    buffer.seek(0)
    return buffer


def review_form(**overrides):
    data = {
        "_csrf_token": CSRF_TOKEN,
        "service_type": "medical_waste",
        "service_name": "  sharps   collection ",
        "title": "Reliable weekly pickups",
        "overall_rating": "5",
        "quality_rating": "4",
        "value_rating": "4",
        "customer_service_rating": "5",
        "comment": "The crew arrived on time every week and left the site clean.",
        "would_recommend": "y",
    }
    data.update(overrides)
    return data


def test_profile_update_changes_only_the_signed_in_user(app, client):
    user_id = create_user(app)
    other_id = create_user(app, email="other@example.com", username="other")
    login(client)

    response = client.post(
        "/profile/edit",
        data={
            "_csrf_token": CSRF_TOKEN,
            "first_name": "Janet",
            "last_name": "Achieng",
            "bio": "Facilities manager.",
            "date_of_birth": "1990-04-12",
            "phone": "0772 423 092",
            "location": "Gulu",
        },
    )

    assert response.status_code == 302
    with app.app_context():
        user = db.session.get(User, user_id)
        assert user.first_name == "Janet"
        assert user.phone == "0772423092"
        assert user.date_of_birth.isoformat() == "1990-04-12"
        assert db.session.get(User, other_id).first_name == "Jane"


def test_profile_rejects_long_bio_and_bad_date(app, client):
    user_id = create_user(app)
    login(client)

    response = client.post(
        "/profile/edit",
        data={"_csrf_token": CSRF_TOKEN, "first_name": "Jane", "bio": "x" * 501, "date_of_birth": "12/04/1990"},
    )

    assert response.status_code == 400
    body = response.get_data(as_text=True)
    assert "Bio must be less than 500 characters" in body
    with app.app_context():
        assert db.session.get(User, user_id).bio is None


def test_profile_photo_is_verified_and_stored(app, client):
    user_id = create_user(app)
    login(client)

    response = client.post(
        "/profile/edit",
        data={"_csrf_token": CSRF_TOKEN, "first_name": "Jane", "photo": (png_bytes(), "me.png", "image/png")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 302
    with app.app_context():
        photo_path = db.session.get(User, user_id).photo_path
    assert photo_path == f"avatars/{user_id}.png"
    assert os.path.exists(os.path.join(app.config["UPLOAD_FOLDER"], photo_path))


def test_profile_photo_that_is_not_an_image_is_rejected(app, client):
    user_id = create_user(app)
    login(client)

    response = client.post(
        "/profile/edit",
        data={
            "_csrf_token": CSRF_TOKEN,
            "first_name": "Jane",
            "photo": (io.BytesIO(b"<?php echo 1; ?>"), "me.png", "image/png"),
        },
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assert "File must be an image" in response.get_data(as_text=True)
    with app.app_context():
        assert db.session.get(User, user_id).photo_path is None


def test_review_create_normalizes_service_name(app, client):
    create_user(app)
    login(client)

    response = client.post("/reviews/create", data=review_form())

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/reviews/my-reviews")
    with app.app_context():
        review = Review.query.one()
        assert review.service_name == "Sharps Collection"
        assert review.would_recommend is True


def test_unchecked_recommend_box_is_stored_as_false(app, client):
    create_user(app)
    login(client)

    data = review_form()
    data.pop("would_recommend")
    client.post("/reviews/create", data=data)

    with app.app_context():
        assert Review.query.one().would_recommend is False


def test_second_review_of_same_service_is_refused(app, client):
    create_user(app)
    login(client)
    client.post("/reviews/create", data=review_form())

    response = client.post("/reviews/create", data=review_form(service_name="Sharps Collection"))

    assert response.status_code == 409
    assert "already reviewed this service" in response.get_data(as_text=True)
    with app.app_context():
        assert Review.query.count() == 1


def test_review_ratings_must_be_between_one_and_five(app, client):
    create_user(app)
    login(client)

    response = client.post("/reviews/create", data=review_form(overall_rating="9"))

    assert response.status_code == 400
    with app.app_context():
        assert Review.query.count() == 0


def test_review_edit_and_delete_are_owner_only(app, client):
    create_user(app)
    other_id = create_user(app, email="other@example.com", username="other")
    with app.app_context():
        foreign = Review(
            user_id=other_id,
            service_type="training",
            service_name="Safety Training",
            title="Good",
            overall_rating=4,
            quality_rating=4,
            value_rating=4,
            customer_service_rating=4,
            comment="Useful and practical sessions.",
        )
        db.session.add(foreign)
        db.session.commit()
        foreign_id = foreign.id
    login(client)

    assert client.get(f"/reviews/{foreign_id}/edit").status_code == 404
    assert client.post(f"/reviews/{foreign_id}/edit", data=review_form()).status_code == 404
    client.post(f"/reviews/{foreign_id}/delete", data={"_csrf_token": CSRF_TOKEN})

    with app.app_context():
        assert db.session.get(Review, foreign_id) is not None


def test_owner_can_edit_and_delete_review(app, client):
    create_user(app)
    login(client)
    client.post("/reviews/create", data=review_form())
    with app.app_context():
        review_id = Review.query.one().id

    edit_page = client.get(f"/reviews/{review_id}/edit")
    assert edit_page.status_code == 200
    assert "Reliable weekly pickups" in edit_page.get_data(as_text=True)

    response = client.post(f"/reviews/{review_id}/edit", data=review_form(title="Even better now"))
    assert response.status_code == 302
    with app.app_context():
        assert db.session.get(Review, review_id).title == "Even better now"

    response = client.post(f"/reviews/{review_id}/delete", data={"_csrf_token": CSRF_TOKEN})
    assert response.status_code == 302
    with app.app_context():
        assert Review.query.count() == 0


def test_failed_profile_save_leaves_no_avatar_behind(app, client, monkeypatch):
    user_id = create_user(app)
    login(client)

    def failing_commit():
        raise RuntimeError("database went away")

    monkeypatch.setattr(db.session, "commit", failing_commit)

    response = client.post(
        "/profile/edit",
        data={"_csrf_token": CSRF_TOKEN, "first_name": "Jane", "photo": (png_bytes(), "me.png", "image/png")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 500
    avatar_dir = os.path.join(app.config["UPLOAD_FOLDER"], "avatars")
    assert not os.path.isdir(avatar_dir) or os.listdir(avatar_dir) == []
    monkeypatch.undo()
    with app.app_context():
        assert db.session.get(User, user_id).photo_path is None


def test_new_avatar_replaces_the_previous_file(app, client):
    user_id = create_user(app)
    login(client)
    client.post(
        "/profile/edit",
        data={"_csrf_token": CSRF_TOKEN, "first_name": "Jane", "photo": (png_bytes(), "me.png", "image/png")},
        content_type="multipart/form-data",
    )

    jpeg = io.BytesIO()
    Image.new("RGB", (8, 8), color=(200, 10, 10)).save(jpeg, format="JPEG")
    jpeg.seek(0)
    response = client.post(
        "/profile/edit",
        data={"_csrf_token": CSRF_TOKEN, "first_name": "Jane", "photo": (jpeg, "me.jpg", "image/jpeg")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 302
    avatar_dir = os.path.join(app.config["UPLOAD_FOLDER"], "avatars")
    assert sorted(os.listdir(avatar_dir)) == [f"{user_id}.jpg"]
    with app.app_context():
        assert db.session.get(User, user_id).photo_path == f"avatars/{user_id}.jpg"

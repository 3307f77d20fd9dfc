import io
from unittest.mock import MagicMock

import pytest

from policywiki import admin as admin_views
from policywiki import storage
from policywiki.workflow import InvalidTransition


def _upload(client, title="Consumer Rights Policy", **overrides):
    data = {
        "title": title,
        "summary": "Rights of every consumer",
        "category_id": overrides.pop("category_id", "1"),
        "effective_date": "2025-01-01",
        "action": "draft",
        "file": (io.BytesIO(b"Every consumer has the right to dignity."), "rights.txt"),
    }
    data.update(overrides)
    return client.post("/admin/upload", data=data, content_type="multipart/form-data")


def test_upload_assigns_unique_slugs(client, login, db, models):
    login()

    first = _upload(client)
    second = _upload(client)

    assert first.status_code == 302
    assert first.headers["Location"].endswith("/documents/consumer-rights-policy")
    assert second.status_code == 302
    assert second.headers["Location"].endswith("/documents/consumer-rights-policy-1")
    slugs = [d.slug for d in db.query(models.Document).order_by(models.Document.id)]
    assert slugs == ["consumer-rights-policy", "consumer-rights-policy-1"]


def test_upload_stores_first_version(client, login, db, models, admin):
    login()

    _upload(client)

    doc = db.query(models.Document).filter_by(slug="consumer-rights-policy").one()
    assert doc.status == "draft"
    assert doc.owner_id == admin.id
    assert doc.content_type == "policy"
    assert doc.file_type == "text"
    assert doc.review_due.isoformat() == "2026-01-01"
    assert "dignity" in doc.search_content

    version = db.query(models.DocumentVersion).filter_by(document_id=doc.id).one()
    assert version.version_number == 1
    assert version.is_current
    assert version.file_key == f"documents/{doc.id}/v1/rights.txt"
    assert version.file_size == len(b"Every consumer has the right to dignity.")


def test_upload_and_publish(client, login, db, models):
    login()

    resp = _upload(client, title="Hand Hygiene Procedure", action="publish")

    assert resp.status_code == 302
    doc = db.query(models.Document).filter_by(slug="hand-hygiene-procedure").one()
    assert doc.status == "published"
    assert doc.content_type == "procedure"
    assert doc.published_at is not None


def test_upload_with_tags(client, login, db, models):
    mandatory = db.query(models.Tag).filter_by(slug="mandatory").one()
    clinical = db.query(models.Tag).filter_by(slug="clinical").one()
    login()

    _upload(client, tags=[str(mandatory.id), str(clinical.id)])

    doc = db.query(models.Document).filter_by(slug="consumer-rights-policy").one()
    assert {t.slug for t in doc.tags} == {"mandatory", "clinical"}


def test_upload_missing_fields_is_400(client, login, db, models):
    login()

    resp = client.post(
        "/admin/upload",
        data={"title": "", "category_id": "", "effective_date": ""},
        content_type="multipart/form-data",
    )

    assert resp.status_code == 400
    assert b"Title is required" in resp.data
    assert b"File is required" in resp.data
    assert db.query(models.Document).count() == 0


def test_contributor_cannot_publish_on_upload(client, login, make_user, db, models):
    make_user("contrib@example.com", roles=["contributor"])
    login("contrib@example.com")

    resp = _upload(client, action="publish")

    assert resp.status_code == 403
    assert db.query(models.Document).count() == 0


def test_contributor_can_submit_on_upload(client, login, make_user, db, models):
    make_user("contrib@example.com", roles=["contributor"])
    login("contrib@example.com")

    resp = _upload(client, action="submit")

    assert resp.status_code == 302
    doc = db.query(models.Document).one()
    assert doc.status == "pending_review"


def test_upload_form_renders(client, login):
    login()

    resp = client.get("/admin/upload")

    assert resp.status_code == 200
    assert b"Consumer Rights" in resp.data


def test_title_without_slug_characters_is_400(client, login, db, models):
    login()

    resp = _upload(client, title="!!!")

    assert resp.status_code == 400
    assert b"Title must contain letters or digits" in resp.data
    assert db.query(models.Document).count() == 0


def _category_id(db, models, slug):
    return str(db.query(models.Category).filter_by(slug=slug).one().id)


def test_upload_with_subcategory_and_business_unit(client, login, db, models):
    unit = db.query(models.BusinessUnit).filter_by(slug="clinical-services").one()
    login()

    resp = _upload(
        client,
        category_id=_category_id(db, models, "policies"),
        subcategory_id=_category_id(db, models, "consumer-rights"),
        business_unit_id=str(unit.id),
    )

    assert resp.status_code == 302
    doc = db.query(models.Document).one()
    assert doc.subcategory.slug == "consumer-rights"
    assert doc.business_unit_id == unit.id


@pytest.mark.parametrize(
    "field, value, message",
    [
        ("business_unit_id", "9999", b"Unknown business unit"),
        ("reviewer_id", "9999", b"Unknown reviewer"),
        ("subcategory_id", "9999", b"Unknown subcategory for this category"),
        ("tags", ["9999"], b"Unknown tag"),
    ],
)
def test_unknown_references_are_400(client, login, db, models, field, value, message):
    login()

    resp = _upload(client, category_id=_category_id(db, models, "policies"), **{field: value})

    assert resp.status_code == 400
    assert message in resp.data
    assert db.query(models.Document).count() == 0


def test_subcategory_of_another_category_is_400(client, login, db, models):
    login()

    resp = _upload(
        client,
        category_id=_category_id(db, models, "procedures"),
        subcategory_id=_category_id(db, models, "consumer-rights"),
    )

    assert resp.status_code == 400
    assert db.query(models.Document).count() == 0


def test_failed_workflow_step_rolls_back_upload(client, login, db, models, monkeypatch):
    stored = MagicMock()
    monkeypatch.setattr(storage, "storage_client", stored)

    def failing_transition(db, document, action, actor_id):
        raise InvalidTransition(action, document.status)

    monkeypatch.setattr(admin_views, "transition", failing_transition)
    login()

    resp = _upload(client, action="submit")

    assert resp.status_code == 409
    assert db.query(models.Document).count() == 0
    assert db.query(models.DocumentVersion).count() == 0
    key = stored.put.call_args[0][0]
    stored.delete.assert_called_once_with(key)

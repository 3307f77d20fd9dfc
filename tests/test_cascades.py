from datetime import timedelta

from policywiki.auth import create_session
from policywiki.documents import add_version


def test_deleting_document_removes_dependents(db, models, make_document, admin):
    doc = make_document("Parent Doc")
    other = make_document("Other Doc")
    add_version(db, doc, b"v1", "a.txt", "text/plain", admin.id)
    doc.tags.append(db.query(models.Tag).filter_by(slug="mandatory").one())
    db.add(models.Bookmark(user_id=admin.id, document_id=doc.id))
    db.add(models.DocumentView(document_id=doc.id, user_id=admin.id))
    db.add(
        models.RelatedDocument(
            document_id=other.id, related_document_id=doc.id, relationship_type="supersedes"
        )
    )
    db.commit()
    doc_id = doc.id

    db.delete(doc)
    db.commit()

    assert db.query(models.DocumentVersion).filter_by(document_id=doc_id).count() == 0
    assert db.query(models.Bookmark).filter_by(document_id=doc_id).count() == 0
    assert db.query(models.DocumentView).filter_by(document_id=doc_id).count() == 0
    assert db.query(models.RelatedDocument).count() == 0
    assert db.query(models.document_tags).filter(models.document_tags.c.document_id == doc_id).count() == 0
    assert db.get(models.Document, other.id) is not None


def test_deleting_user_removes_sessions_roles_and_bookmarks(db, models, make_user, make_document):
    user = make_user("temp@example.com", roles=["reader", "contributor"])
    doc = make_document("Bookmarked")
    create_session(db, user.id, ttl=timedelta(minutes=5))
    db.add(models.Bookmark(user_id=user.id, document_id=doc.id))
    db.commit()
    user_id = user.id

    db.delete(user)
    db.commit()

    assert db.query(models.Session).filter_by(user_id=user_id).count() == 0
    assert db.query(models.UserRole).filter_by(user_id=user_id).count() == 0
    assert db.query(models.Bookmark).filter_by(user_id=user_id).count() == 0
    assert db.query(models.Role).count() == 5

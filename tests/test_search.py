from datetime import date

import pytest
from werkzeug.datastructures import MultiDict

from policywiki.search import SearchOptions, search_documents


@pytest.fixture()
def corpus(make_document):
    return {
        "draft": make_document("Falls Prevention Draft", status="draft"),
        "published": make_document(
            "Falls Prevention Policy",
            status="published",
            summary="Reducing falls in residential care",
            effective_date=date(2024, 6, 1),
        ),
        "archived": make_document("Old Falls Policy", status="archived"),
    }


def _titles(result):
    return {doc.title for doc in result.documents}


def test_default_excludes_archived(db, corpus):
    result = search_documents(db, SearchOptions())

    assert _titles(result) == {"Falls Prevention Draft", "Falls Prevention Policy"}
    assert result.total == 2


def test_include_archived(db, corpus):
    result = search_documents(db, SearchOptions(include_archived=True))

    assert result.total == 3


def test_explicit_status(db, corpus):
    assert _titles(search_documents(db, SearchOptions(status="archived"))) == {"Old Falls Policy"}
    assert _titles(search_documents(db, SearchOptions(status="published"))) == {
        "Falls Prevention Policy"
    }


def test_text_query_matches_summary_and_content(db, corpus, make_document):
    make_document("Medication Policy", search_content="double check residential dosing")

    assert _titles(search_documents(db, SearchOptions(query="RESIDENTIAL"))) == {
        "Falls Prevention Policy",
        "Medication Policy",
    }


def test_tag_filter(db, models, corpus):
    mandatory = db.query(models.Tag).filter_by(slug="mandatory").one()
    doc = corpus["published"]
    doc.tags.append(mandatory)
    db.commit()

    result = search_documents(db, SearchOptions(tags=[mandatory.id]))

    assert _titles(result) == {"Falls Prevention Policy"}


def test_date_range(db, corpus):
    options = SearchOptions(from_date=date(2024, 3, 1), to_date=date(2024, 12, 31))

    assert _titles(search_documents(db, options)) == {"Falls Prevention Policy"}


def test_sort_by_title_and_pagination(db, make_document):
    for title in ("Charlie", "Alpha", "Bravo"):
        make_document(title)

    first = search_documents(db, SearchOptions(sort_by="title", limit=2))
    second = search_documents(db, SearchOptions(sort_by="title", limit=2, offset=2))

    assert [d.title for d in first.documents] == ["Alpha", "Bravo"]
    assert [d.title for d in second.documents] == ["Charlie"]
    assert first.total == second.total == 3


def test_sort_by_date(db, make_document):
    make_document("Older", effective_date=date(2023, 1, 1))
    make_document("Newer", effective_date=date(2025, 1, 1))

    result = search_documents(db, SearchOptions(sort_by="date"))

    assert [d.title for d in result.documents] == ["Newer", "Older"]


def test_from_args_parses_query_string():
    args = MultiDict(
        [
            ("q", " falls "),
            ("type", "policy"),
            ("category", "3"),
            ("tags", "1,2"),
            ("tags", "5"),
            ("from", "2024-01-01"),
            ("sort", "title"),
            ("limit", "500"),
        ]
    )

    options = SearchOptions.from_args(args, status="published")

    assert options.query == "falls"
    assert options.content_type == "policy"
    assert options.category == 3
    assert options.tags == [1, 2, 5]
    assert options.from_date == date(2024, 1, 1)
    assert options.status == "published"
    assert options.sort_by == "title"
    assert options.limit == 100


def test_from_args_keeps_explicit_status():
    options = SearchOptions.from_args(MultiDict({"status": "draft"}), status="published")

    assert options.status == "draft"


@pytest.mark.parametrize(
    "args",
    [
        {"category": "abc"},
        {"from": "yesterday"},
        {"status": "bogus"},
        {"sort": "random"},
        {"offset": "-1"},
    ],
)
def test_from_args_rejects_malformed_values(args):
    with pytest.raises(ValueError):
        SearchOptions.from_args(MultiDict(args))


def test_wildcards_in_query_match_literally(db, make_document):
    make_document("Staffing 1000 Policy")
    make_document("Budget 10% Reserve Policy")
    make_document("Form_A Register")
    make_document("FormXA Register")

    assert _titles(search_documents(db, SearchOptions(query="10%"))) == {
        "Budget 10% Reserve Policy"
    }
    assert _titles(search_documents(db, SearchOptions(query="form_a"))) == {"Form_A Register"}

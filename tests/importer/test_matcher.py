import pytest

from portal_app.importer.pipeline.candidate_index import CandidateIndex, EntityRecord
from portal_app.importer.pipeline.matcher import MatchAction, MatchType, RowMatcher, match_row, split_list_field
from portal_app.importer.pipeline.reconcile import get_import_type
from portal_app.importer.pipeline.similarity import FIRST_WORD_SCORE


@pytest.fixture
def index():
    return CandidateIndex.build(
        [
            EntityRecord(id=1, name="Acme Spirits"),
            EntityRecord(id=2, name="Global Wine Co"),
        ]
    )


def test_exact_match(index):
    match = match_row(0, "Acme Spirits", index)
    assert match.match_type is MatchType.EXACT
    assert match.matched_id == 1
    assert match.similarity == 1.0
    assert match.action is MatchAction.UPDATE


def test_first_word_match_ignores_leading_article(index):
    match = match_row(3, "The Global Wine Company", index)
    assert match.match_type is MatchType.FUZZY
    assert match.matched_id == 2
    assert match.similarity == FIRST_WORD_SCORE
    assert match.basis == "first_word"
    assert match.action is MatchAction.MATCH


def test_similarity_match(index):
    match = match_row(0, "Akme Spirits", index)
    assert match.match_type is MatchType.FUZZY
    assert match.matched_id == 1
    assert match.basis == "similarity"
    assert match.similarity == pytest.approx(0.9167, abs=1e-4)


def test_similarity_below_threshold_is_new(index):
    match = match_row(0, "Akme Spirits", index, threshold=0.95)
    assert match.match_type is MatchType.NEW
    assert match.matched_entity is None


def test_unknown_name_is_new(index):
    match = match_row(0, "Totally Unique Distillery 9000", index)
    assert match.match_type is MatchType.NEW
    assert match.action is MatchAction.CREATE


@pytest.mark.parametrize("name", [None, "", "   "])
def test_missing_name_is_error(index, name):
    match = match_row(0, name, index)
    assert match.match_type is MatchType.ERROR
    assert match.error == "Missing name"


def test_punctuation_only_name_is_matched_or_new():
    index = CandidateIndex.build([EntityRecord(id=1, name="!!!"), EntityRecord(id=2, name="Acme Spirits")])

    assert match_row(0, "!!!", index).match_type is MatchType.EXACT
    unmatched = match_row(1, "?!", index)
    assert unmatched.match_type is MatchType.NEW
    assert unmatched.action is MatchAction.CREATE


@pytest.mark.parametrize(
    "name",
    ["Acme Spirits", "acme spirits", "The Global Wine Company", "Akme Spirits", "Brand New", "!!!", "?!", "A", "  Global  "],
)
def test_every_non_empty_name_gets_one_classification(index, name):
    match = match_row(0, name, index)

    assert match.match_type in {MatchType.EXACT, MatchType.FUZZY, MatchType.NEW}
    assert match.error is None
    assert (match.matched_entity is None) is (match.match_type is MatchType.NEW)


def test_match_payload_shape(index):
    payload = match_row(2, "Acme Spirits", index).to_payload()
    assert payload["rowIndex"] == 2
    assert payload["matchType"] == "exact"
    assert payload["matchedEntity"]["id"] == 1


def test_split_list_field():
    assert split_list_field("Wine, Spirits ,,") == ["Wine", "Spirits"]
    assert split_list_field(["Beer", " "]) == ["Beer"]
    assert split_list_field(None) == []


def test_validate_rows_against_store(importer_app, entity_factory):
    entity_factory("brand", "Acme Spirits")
    entity_factory("brand", "Global Wine Co")
    rows = [
        {"brand_name": "Acme Spirits", "brand_categories": "Spirits, Mead"},
        {"brand_name": "The Global Wine Company"},
        {"brand_name": "Totally Unique Distillery 9000"},
        {"brand_name": ""},
    ]
    seen = []

    report = RowMatcher(get_import_type("brands")).validate_rows(rows, progress=seen.append)

    assert report.summary.as_dict() == {"total": 4, "exact": 1, "fuzzy": 1, "new": 1, "errors": 1}
    assert seen == [1, 2, 3, 4]
    first = report.reviews[0]
    assert first.categories == ["Spirits"]
    assert first.unknown_categories == ["Mead"]

    payload = report.to_payload()
    assert payload["importType"] == "brands"
    assert [result["matchType"] for result in payload["results"]] == ["exact", "fuzzy", "new", "error"]
    assert {entity["name"] for entity in payload["existingEntities"]} == {"Acme Spirits", "Global Wine Co"}
    assert "existingEntities" not in report.to_payload(include_candidates=False)


def test_validate_portfolio_rows_match_owner(importer_app, entity_factory):
    entity_factory("supplier", "Southern Glazers")
    entity_factory("brand", "Acme Spirits")
    rows = [{"supplier_name": "Southern Glazers", "brand_name": "Acme Spirits", "state_code": " ca "}]

    report = RowMatcher(get_import_type("supplier-portfolio")).validate_rows(rows)

    result = report.to_payload()["results"][0]
    assert result["matchType"] == "exact"
    assert result["owner"]["matchType"] == "exact"
    assert result["stateCode"] == "CA"


def test_matcher_uses_configured_threshold(importer_app, entity_factory):
    importer_app.config["IMPORTER_MATCH_THRESHOLD"] = 0.99
    entity_factory("brand", "Acme Spirits")

    matcher = RowMatcher(get_import_type("brands"))

    assert matcher.threshold == 0.99
    assert matcher.match(0, {"brand_name": "Akme Spirits"}).match_type is MatchType.NEW

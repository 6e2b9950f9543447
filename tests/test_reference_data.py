from portal_app.models import Category, State, SubCategory, db
from portal_app.models.reference_data import DEFAULT_CATEGORIES, US_STATES, seed_reference_data


def test_seed_reference_data_creates_states_and_categories():
    created = seed_reference_data(db.session)

    assert created["states"] == len(US_STATES) == 51
    assert created["categories"] == len(DEFAULT_CATEGORIES)
    assert created["sub_categories"] == sum(len(subs) for subs in DEFAULT_CATEGORIES.values())
    assert State.query.filter_by(code="CA").one().name == "California"


def test_seed_reference_data_is_idempotent():
    seed_reference_data(db.session)

    created = seed_reference_data(db.session)

    assert created == {"states": 0, "categories": 0, "sub_categories": 0}
    assert State.query.count() == 51
    assert Category.query.count() == 5


def test_seed_reference_data_fills_missing_sub_categories():
    spirits = Category(name="Spirits")
    db.session.add(spirits)
    db.session.flush()
    db.session.add(SubCategory(name="Gin", category_id=spirits.id))
    db.session.commit()

    created = seed_reference_data(db.session)

    assert created["categories"] == len(DEFAULT_CATEGORIES) - 1
    assert SubCategory.query.filter_by(category_id=spirits.id).count() == len(DEFAULT_CATEGORIES["Spirits"])

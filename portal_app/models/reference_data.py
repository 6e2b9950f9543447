"""
Reference data seeded into a fresh database: US states (portfolio rows are
scoped by state code) and the default brand category tree.
"""

from __future__ import annotations

US_STATES = (
    ("AL", "Alabama"), ("AK", "Alaska"), ("AZ", "Arizona"), ("AR", "Arkansas"),
    ("CA", "California"), ("CO", "Colorado"), ("CT", "Connecticut"), ("DE", "Delaware"),
    ("DC", "District of Columbia"), ("FL", "Florida"), ("GA", "Georgia"), ("HI", "Hawaii"),
    ("ID", "Idaho"), ("IL", "Illinois"), ("IN", "Indiana"), ("IA", "Iowa"),
    ("KS", "Kansas"), ("KY", "Kentucky"), ("LA", "Louisiana"), ("ME", "Maine"),
    ("MD", "Maryland"), ("MA", "Massachusetts"), ("MI", "Michigan"), ("MN", "Minnesota"),
    ("MS", "Mississippi"), ("MO", "Missouri"), ("MT", "Montana"), ("NE", "Nebraska"),
    ("NV", "Nevada"), ("NH", "New Hampshire"), ("NJ", "New Jersey"), ("NM", "New Mexico"),
    ("NY", "New York"), ("NC", "North Carolina"), ("ND", "North Dakota"), ("OH", "Ohio"),
    ("OK", "Oklahoma"), ("OR", "Oregon"), ("PA", "Pennsylvania"), ("RI", "Rhode Island"),
    ("SC", "South Carolina"), ("SD", "South Dakota"), ("TN", "Tennessee"), ("TX", "Texas"),
    ("UT", "Utah"), ("VT", "Vermont"), ("VA", "Virginia"), ("WA", "Washington"),
    ("WV", "West Virginia"), ("WI", "Wisconsin"), ("WY", "Wyoming"),
)  # fmt: skip

DEFAULT_CATEGORIES = {
    "Spirits": ("Whiskey", "Vodka", "Gin", "Rum", "Tequila", "Brandy", "Liqueur"),
    "Wine": ("Red", "White", "Rose", "Sparkling", "Dessert"),
    "Beer": ("Lager", "Ale", "IPA", "Stout", "Sour"),
    "Cider": (),
    "Non-Alcoholic": (),
}


def seed_reference_data(session) -> dict[str, int]:
    """Insert missing states, categories, and sub-categories. Safe to re-run."""
    from .catalog import Category, State, SubCategory

    created = {"states": 0, "categories": 0, "sub_categories": 0}

    existing_states = {code for (code,) in session.query(State.code).all()}
    for code, name in US_STATES:
        if code not in existing_states:
            session.add(State(code=code, name=name))
            created["states"] += 1

    categories = {category.name: category for category in session.query(Category).all()}
    for category_name, sub_names in DEFAULT_CATEGORIES.items():
        category = categories.get(category_name)
        if category is None:
            category = Category(name=category_name)
            session.add(category)
            session.flush()
            created["categories"] += 1
        existing_subs = {sub.name for sub in session.query(SubCategory).filter_by(category_id=category.id)}
        for sub_name in sub_names:
            if sub_name not in existing_subs:
                session.add(SubCategory(name=sub_name, category_id=category.id))
                created["sub_categories"] += 1

    session.commit()
    return created

# scripts/init_database.py

"""
Database initialization script.
This script creates all tables and seeds reference data:
- US states used to scope portfolio relationships
- Default brand categories and sub-categories
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import app  # noqa: E402
from portal_app.models import db  # noqa: E402
from portal_app.models.reference_data import seed_reference_data  # noqa: E402


def init_database():
    """Initialize database with all reference data"""
    with app.app_context():
        print("Creating database tables...")
        db.create_all()
        print("Catalog, relationship, and importer tables created")

        print("Seeding reference data...")
        created = seed_reference_data(db.session)
        print(
            f"Created {created['states']} state(s), {created['categories']} categor(ies), "
            f"{created['sub_categories']} sub-categor(ies)"
        )

        print("\nDatabase initialization complete!")
        print("\nNext steps:")
        print("  1. Validate a file: flask importer validate --type brands --file brands.csv")
        print("  2. Import it:       flask importer run --type brands --file brands.csv")


if __name__ == "__main__":
    init_database()

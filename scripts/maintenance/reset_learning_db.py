"""
Reset the scheduling database.

DANGEROUS: This deletes all cards and review history!
Only use when you want to start fresh for testing.

Usage:
    python -m scripts.maintenance.reset_learning_db
"""

from srs_core.config import is_test_mode
from srs_core.fsrs.database import reset_db


def main():
    print("=" * 60)
    print("WARNING: Reset Scheduling Database")
    print("=" * 60)
    print()
    print(f"Target: {'TEST' if is_test_mode() else 'PRODUCTION'} database")
    print()
    print("This will DELETE:")
    print("  - All cards and their memory state (stability, difficulty, etc.)")
    print("  - All review logs")
    print("  - All short-loop day state, user settings and feature flags")
    print()

    response = input("Are you sure you want to reset? (type 'yes' to confirm): ")

    if response.lower() == "yes":
        print("\nResetting database...")
        reset_db()
        print("Database reset complete!")
        print("\nThe database now has empty tables ready for new reviews.")
    else:
        print("\nCancelled. No changes made.")


if __name__ == "__main__":
    main()

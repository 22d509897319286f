#!/usr/bin/env python3
"""
Database initialization script for Userbase.

Creates the users, identities, sessions and challenge tables, including the
unique constraints the identity linker relies on. For production, prefer
managed migrations.
"""
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from userbase.database import close_all, get_database_url, get_health_status, init_all


def main():
    """Initialize database and create all tables."""
    print("=" * 60)
    print("Userbase Database Initialization")
    print("=" * 60)

    try:
        db_url = get_database_url()
        print(f"\nDatabase: {db_url.split('@')[1] if '@' in db_url else db_url.split(':')[0]}")

        print("\nCreating database tables...")
        init_all(db_url=db_url, create_tables=True)
        print("All tables created")

        print("\nChecking health...")
        health = get_health_status()
        print(f"  Database: {health['database']['status']}")
        print(f"  Redis: {health['redis']['status']}")

        if health["database"]["status"] != "healthy":
            print("\nDatabase is not healthy. Check configuration.")
            return 1

        print("\nDatabase initialization complete!")
        return 0

    except Exception as e:
        print(f"\nError initializing database: {e}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        close_all()


if __name__ == "__main__":
    sys.exit(main())

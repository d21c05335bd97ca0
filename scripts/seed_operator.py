#!/usr/bin/env python3
"""
Seed the first operator account.

Reads OPERATOR_EMAIL and OPERATOR_PASSWORD from .env file.
Run from project root: python scripts/seed_operator.py
"""

import sys
import os

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

# Load .env file
from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

from src.db import get_supabase
from src.routers.operators import hash_password


def main():
    email = os.getenv("OPERATOR_EMAIL")
    password = os.getenv("OPERATOR_PASSWORD")

    if not email or not password:
        print("Error: OPERATOR_EMAIL and OPERATOR_PASSWORD must be set in .env")
        sys.exit(1)

    supabase = get_supabase()
    existing = supabase.table("operators").select("id").eq("email", email).execute()
    if existing.data:
        print(f"Operator with email '{email}' already exists.")
        sys.exit(0)

    result = supabase.table("operators").insert({
        "email": email,
        "password_hash": hash_password(password),
        "name": os.getenv("OPERATOR_NAME") or "Operator",
    }).execute()

    if result.data:
        operator = result.data[0]
        print(f"Created operator:")
        print(f"  ID: {operator['id']}")
        print(f"  Email: {operator['email']}")
        print(f"  Created: {operator['created_at']}")
    else:
        print("Error: Failed to create operator")
        sys.exit(1)


if __name__ == "__main__":
    main()

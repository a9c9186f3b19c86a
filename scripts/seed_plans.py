"""Seed the default subscription plan catalog."""

from dotenv import load_dotenv

from billing_engine.db import SessionLocal
from billing_engine.services.plan_seed import seed_default_plans


def main() -> None:
    load_dotenv()
    db = SessionLocal()
    try:
        plans = seed_default_plans(db)
        print(f"Plan seed complete ({len(plans)} plans).")
    finally:
        db.close()


if __name__ == "__main__":
    main()

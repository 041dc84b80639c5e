# scripts/seed.py

import os
import sys
import argparse

from dotenv import load_dotenv
from sqlmodel import Session, select

# Ensure root path for relative imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# ✅ Load environment variables before settings are read
load_dotenv()

from core.database import engine, create_db_and_tables  # noqa: E402
from core.security import create_token_for_user  # noqa: E402
from core.config import settings  # noqa: E402
from models.models import User, UserRole, Organization  # noqa: E402
from services.abacatepay import AbacatePayClient  # noqa: E402
from services.checkout import CheckoutService  # noqa: E402
from services.entitlements import EntitlementService  # noqa: E402
from services.feature_rollout import FeatureRolloutService  # noqa: E402

DEV_ROLLOUTS = {
    "advanced_analytics": 25,
    "priority_support": 10,
}


def _get_or_create_org(session: Session, name: str) -> Organization:
    org = session.exec(select(Organization).where(Organization.name == name)).first()
    if not org:
        org = Organization(name=name)
        session.add(org)
        session.commit()
        session.refresh(org)
        print(f"✅ Created {name}")
    return org


def _get_or_create_user(session: Session, org: Organization, email: str, full_name: str, role: UserRole) -> User:
    user = session.exec(
        select(User).where(User.organization_id == org.id, User.email == email)
    ).first()
    if not user:
        user = User(full_name=full_name, email=email, role=role.value, organization_id=org.id, is_active=True)
        session.add(user)
        session.commit()
        session.refresh(user)
        print(f"✅ Added {role.value} {email}")
    return user


def seed_dev_data():
    """Seed development database with a demo organization on a trial plus feature rollouts."""
    print("🌱 Seeding development data...")
    create_db_and_tables()

    with Session(engine) as session:
        org = _get_or_create_org(session, "Demo Organization")

        # -----------------------------
        # 👑 Owner + members
        # -----------------------------
        owner = _get_or_create_user(session, org, "owner@demo.com", "Demo Owner", UserRole.OWNER)
        for email in ["member1@demo.com", "member2@demo.com"]:
            _get_or_create_user(session, org, email, email.split("@")[0].capitalize(), UserRole.MEMBER)

        # -----------------------------
        # 💳 Subscription + billing profile
        # -----------------------------
        entitlements = EntitlementService(session)
        entitlements.ensure_subscription(org.id)
        entitlements.update_billing_profile(
            org.id,
            billing_name="Demo Organization LTDA",
            billing_cellphone="(11) 98765-4321",
            billing_tax_id="11.222.333/0001-81",
        )
        print("✅ Trial subscription with billing profile ready")

        # -----------------------------
        # 🚩 Feature rollouts
        # -----------------------------
        rollouts = FeatureRolloutService(session)
        for feature_key, percentage in DEV_ROLLOUTS.items():
            rollouts.set_feature_rollout(feature_key, percentage)
        print(f"✅ Configured {len(DEV_ROLLOUTS)} feature rollouts")

        print(f"🔑 Owner token: {create_token_for_user(owner)}")

    print("🌱 Development data seeding complete.")


def seed_staging_data():
    """Seed staging database with minimal safe data."""
    print("🌱 Seeding staging data...")
    create_db_and_tables()

    with Session(engine) as session:
        org = _get_or_create_org(session, "Staging Org")
        _get_or_create_user(session, org, "staging-owner@example.com", "Staging Owner", UserRole.OWNER)
        EntitlementService(session).ensure_subscription(org.id)

    print("🌱 Staging data seeding complete.")


def sweep_stale_checkouts():
    """One-off sweep of PENDING checkouts older than the pending timeout."""
    with Session(engine) as session:
        failed = CheckoutService(session).sweep_stale_checkouts()
    print(f"🧹 Marked {failed} stale checkout(s) as failed.")


def simulate_pix_payment(pix_qr_code_id: str):
    """Mark a dev-mode PIX QR code as paid so the provider fires its webhook."""
    if settings.IS_PRODUCTION:
        print("❌ PIX simulation is only available outside production.")
        sys.exit(1)
    pix = AbacatePayClient.from_settings().simulate_pix_payment(pix_qr_code_id, metadata={"source": "seed"})
    print(f"💸 PIX {pix.id} is now {pix.status}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed or maintain the billing database.")
    parser.add_argument(
        "--env",
        choices=["dev", "staging"],
        default="dev",
        help="Select environment to seed (dev or staging)",
    )
    parser.add_argument(
        "--sweep",
        action="store_true",
        help="Only run the stale checkout sweep",
    )
    parser.add_argument(
        "--simulate-pix",
        metavar="PIX_QR_CODE_ID",
        help="Simulate payment of a dev-mode PIX QR code",
    )
    args = parser.parse_args()

    if args.sweep:
        sweep_stale_checkouts()
    elif args.simulate_pix:
        simulate_pix_payment(args.simulate_pix)
    elif args.env == "dev":
        seed_dev_data()
    elif args.env == "staging":
        seed_staging_data()

#!/usr/bin/env python3
"""
Grant, revoke or reset credits for sellers.

Usage:
    # Grant bonus credits
    python grant_credits.py --seller seller_123 --credits 100

    # Revoke bonus credits
    python grant_credits.py --seller seller_123 --revoke 50

    # Top the balance back up to the plan's monthly allocation
    python grant_credits.py --seller seller_123 --reset

    # Assign a plan without payment (support/admin only)
    python grant_credits.py --seller seller_123 --assign-plan pro_monthly
"""

import argparse
import sys
import os

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sellerhub.core.errors import AppError
from sellerhub.db.redis import invalidate_subscription_cache
from sellerhub.db.session import SessionLocal
from sellerhub.services import ledger_service
from sellerhub.services.ledger_service import TransactionType, seller_lock
from sellerhub.services.plan_catalog import build_plan, get_plan
from sellerhub.services.subscription_service import activate_subscription, find_current


def grant_credits(seller_id: str, credits: int):
    """Grant bonus credits to a seller's current subscription"""
    db = SessionLocal()
    try:
        subscription = find_current(seller_id, db)
        if not subscription:
            print(f"❌ No subscription found for seller {seller_id}")
            return False

        transaction = ledger_service.credit(
            subscription.id, credits, "Admin grant", db,
            transaction_type=TransactionType.BONUS, reference_type="admin_script",
        )
        print(f"✅ Granted {credits} bonus credits to {seller_id}")
        print(f"   Balance: {transaction.balance_before} → {transaction.balance_after}")
        return True

    except AppError as e:
        print(f"❌ Error: {e.message}")
        return False
    finally:
        db.close()


def revoke_credits(seller_id: str, credits: int):
    """Revoke bonus credits from a seller's current subscription"""
    db = SessionLocal()
    try:
        subscription = find_current(seller_id, db)
        if not subscription:
            print(f"❌ No subscription found for seller {seller_id}")
            return False

        transaction = ledger_service.revoke_bonus(subscription.id, credits, "Admin revocation", db)
        if transaction is None:
            print(f"⚠️  Seller {seller_id} has no bonus credits to revoke")
            return True
        print(f"✅ Revoked {transaction.amount} bonus credits from {seller_id}")
        print(f"   Balance: {transaction.balance_before} → {transaction.balance_after}")
        return True

    except AppError as e:
        print(f"❌ Error: {e.message}")
        return False
    finally:
        db.close()


def reset_credits(seller_id: str):
    """Top the seller's balance back up to their plan's credit allocation"""
    db = SessionLocal()
    try:
        subscription = find_current(seller_id, db)
        if not subscription:
            print(f"❌ No subscription found for seller {seller_id}")
            return False

        plan = build_plan(subscription.plan)
        shortfall = plan.credits_granted - subscription.total_credits_remaining
        if shortfall <= 0:
            print(f"⚠️  Balance already at or above {plan.credits_granted}, nothing to reset")
            return True

        transaction = ledger_service.credit(
            subscription.id, shortfall, f"Admin reset for {plan.name}", db,
            transaction_type=TransactionType.RESET, reference_type="admin_script",
        )
        print(f"✅ Reset credits for {seller_id}")
        print(f"   Plan: {plan.id}")
        print(f"   Balance: {transaction.balance_before} → {transaction.balance_after}")
        return True

    except AppError as e:
        print(f"❌ Error: {e.message}")
        return False
    finally:
        db.close()


def assign_plan(seller_id: str, plan_id: str):
    """Assign a plan to a seller without a payment (support/admin only)"""
    db = SessionLocal()
    try:
        plan = get_plan(plan_id, db)
        with seller_lock(seller_id):
            previous = find_current(seller_id, db)
            old_plan = previous.plan_id if previous else None
            subscription, _ = activate_subscription(
                seller_id, plan, db, reference_type="admin_script"
            )
            db.commit()
        invalidate_subscription_cache(seller_id, "admin_assignment")

        print(f"✅ Assigned plan {plan.id} to {seller_id}")
        print(f"   Previous plan: {old_plan}")
        print(f"   Credits: {subscription.total_credits_remaining}")
        print(f"   Valid until: {subscription.end_date}")
        return True

    except AppError as e:
        print(f"❌ Error: {e.message}")
        db.rollback()
        return False
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(
        description='Grant, revoke or reset seller credits',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Grant 100 bonus credits
  python %(prog)s --seller seller_123 --credits 100

  # Revoke 50 bonus credits
  python %(prog)s --seller seller_123 --revoke 50

  # Reset balance to the plan allocation
  python %(prog)s --seller seller_123 --reset

  # Assign a plan without payment
  python %(prog)s --seller seller_123 --assign-plan pro_monthly
        """
    )

    parser.add_argument('--seller', required=True, help='Seller ID')
    parser.add_argument('--credits', type=int, help='Number of bonus credits to grant')
    parser.add_argument('--revoke', type=int, help='Number of bonus credits to revoke')
    parser.add_argument('--reset', action='store_true', help='Top balance up to the plan allocation')
    parser.add_argument('--assign-plan', help='Plan ID to assign without payment')

    args = parser.parse_args()

    # Validate arguments
    actions = sum([
        bool(args.credits),
        bool(args.revoke),
        args.reset,
        bool(args.assign_plan),
    ])

    if actions == 0:
        print("❌ Error: Must specify one action (--credits, --revoke, --reset, or --assign-plan)")
        parser.print_help()
        sys.exit(1)

    if actions > 1:
        print("❌ Error: Can only specify one action at a time")
        sys.exit(1)

    # Execute action
    if args.credits:
        success = grant_credits(args.seller, args.credits)
    elif args.revoke:
        success = revoke_credits(args.seller, args.revoke)
    elif args.reset:
        success = reset_credits(args.seller)
    else:
        success = assign_plan(args.seller, args.assign_plan)

    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()

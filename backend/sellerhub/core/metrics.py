"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY

# Entitlement metrics
try:
    entitlement_decisions_counter = Counter(
        'sellerhub_entitlement_decisions_total',
        'Total number of entitlement decisions',
        ['outcome']
    )
except ValueError:
    entitlement_decisions_counter = REGISTRY._names_to_collectors.get('sellerhub_entitlement_decisions_total')

# Ledger metrics
try:
    credits_debited_counter = Counter(
        'sellerhub_credits_debited_total',
        'Total number of credits debited from subscriptions'
    )
except ValueError:
    credits_debited_counter = REGISTRY._names_to_collectors.get('sellerhub_credits_debited_total')

try:
    credits_credited_counter = Counter(
        'sellerhub_credits_credited_total',
        'Total number of credits added to subscriptions',
        ['transaction_type']
    )
except ValueError:
    credits_credited_counter = REGISTRY._names_to_collectors.get('sellerhub_credits_credited_total')

try:
    ledger_conflicts_counter = Counter(
        'sellerhub_ledger_conflicts_total',
        'Total number of optimistic concurrency conflicts retried by the ledger'
    )
except ValueError:
    ledger_conflicts_counter = REGISTRY._names_to_collectors.get('sellerhub_ledger_conflicts_total')

try:
    insufficient_credits_counter = Counter(
        'sellerhub_insufficient_credits_total',
        'Total number of debits rejected for insufficient credits'
    )
except ValueError:
    insufficient_credits_counter = REGISTRY._names_to_collectors.get('sellerhub_insufficient_credits_total')

# Payment metrics
try:
    purchases_initiated_counter = Counter(
        'sellerhub_purchases_initiated_total',
        'Total number of plan purchases initiated',
        ['kind']
    )
except ValueError:
    purchases_initiated_counter = REGISTRY._names_to_collectors.get('sellerhub_purchases_initiated_total')

try:
    payment_verifications_counter = Counter(
        'sellerhub_payment_verifications_total',
        'Total number of payment verification attempts',
        ['status']
    )
except ValueError:
    payment_verifications_counter = REGISTRY._names_to_collectors.get('sellerhub_payment_verifications_total')

# Scheduler metrics
try:
    sweep_runs_counter = Counter(
        'sellerhub_subscription_sweep_runs_total',
        'Total number of subscription sweep runs',
        ['status']
    )
except ValueError:
    sweep_runs_counter = REGISTRY._names_to_collectors.get('sellerhub_subscription_sweep_runs_total')

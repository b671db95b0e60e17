"""
Centralized Pricing Configuration for Get Flowing and TenantSync
Easy to update tiers and limits without touching handler code
"""

# ==========================================
# GET FLOWING SUBSCRIPTION TIERS
# ==========================================
SUBSCRIPTION_TIERS = {
    'free': {
        'tier': 'free',
        'name': 'Free',
        'price_monthly': 0.00,
        'flows_per_month': 3,
    },
    'pro': {
        'tier': 'pro',
        'name': 'Pro',
        'price_monthly': 39.00,
        'flows_per_month': 50,
    },
    'enterprise': {
        'tier': 'enterprise',
        'name': 'Enterprise',
        'price_monthly': 399.00,
        'flows_per_month': 999999,  # Effectively unlimited
    },
}

DEFAULT_TIER = 'free'
PAID_TIERS = ('pro', 'enterprise')

# ==========================================
# TENANTSYNC CUSTOMER TIERS
# ==========================================
TENANTSYNC_TIERS = {
    'starter': {
        'max_sync_pairs': 1,
        'max_flows_per_pair': 25,
        'bidirectional_enabled': False,
    },
    'professional': {
        'max_sync_pairs': 5,
        'max_flows_per_pair': 100,
        'bidirectional_enabled': False,
    },
    'enterprise': {
        'max_sync_pairs': 50,
        'max_flows_per_pair': 1000,
        'bidirectional_enabled': True,
    },
}

TENANTSYNC_DEFAULT_TIER = 'starter'
TENANTSYNC_ACTIVE_STATUSES = ('active', 'trial')


def get_flow_limit(tier):
    """Monthly flow allowance for a tier; unknown tiers get the free allowance"""
    plan = SUBSCRIPTION_TIERS.get((tier or '').lower())
    if not plan:
        plan = SUBSCRIPTION_TIERS[DEFAULT_TIER]
    return plan['flows_per_month']


def get_tier_limits():
    """Tier name -> monthly flow allowance"""
    return {key: plan['flows_per_month'] for key, plan in SUBSCRIPTION_TIERS.items()}


def get_tenantsync_limits(tier):
    """Limits for a TenantSync customer tier"""
    return dict(TENANTSYNC_TIERS.get(tier, TENANTSYNC_TIERS[TENANTSYNC_DEFAULT_TIER]))

"""
Business logic services.

Submodules are imported directly (langlearn.services.usage_meter, ...);
the config layer depends on billing_errors and entitlement_policy, so
nothing is re-exported here.
"""

"""
Referral ledger and reward policy.
"""

"""
Compliance Approvals
Blueprint registry.
"""

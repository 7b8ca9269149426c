"""
ERP Approval Engine
Blueprint registry.
"""

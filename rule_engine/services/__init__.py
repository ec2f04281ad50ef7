"""
Service layer for the rule engine.

Services own transactions and authorization; routers stay thin.
"""

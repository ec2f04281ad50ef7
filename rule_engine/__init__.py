"""
Tenant-scoped rule engine: versioned condition/action rules evaluated
against incoming signals, with an audit and evaluation trail.
"""

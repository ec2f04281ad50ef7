"""
Signal ingestion adapters other than the HTTP endpoint.
"""

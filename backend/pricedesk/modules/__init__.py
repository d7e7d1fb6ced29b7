"""Application modules.

- billing: Plan catalog, subscription reconciliation and usage quota
"""

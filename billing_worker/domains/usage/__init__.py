"""
Usage domain: per-shop request/token ledger and threshold notifications
"""

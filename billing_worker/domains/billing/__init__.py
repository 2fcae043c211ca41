"""
Billing domain: subscriptions, payments, credit packages and the Shopify billing client
"""

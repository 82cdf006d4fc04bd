"""
Fulfillment dispatch service.

Order status lifecycle, driver shifts and order-to-driver assignment for the
grocery-delivery backend.
"""

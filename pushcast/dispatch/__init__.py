"""Dispatch package.

``DeliveryExecutor`` fans one claimed campaign out to its subscribers;
``DeliveryTracker`` records the clicks and closes the service worker
reports back for each delivery.
"""

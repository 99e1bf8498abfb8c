"""Scheduling package.

``recurrence`` computes next fire times for recurring campaigns;
``scheduler`` decides when campaigns fire and claims them for dispatch.
"""

"""Campaign lifecycle: delivery types, statuses and allowed transitions."""

from leasequeue.retry.policy import RetryPolicy

__all__ = ["RetryPolicy"]

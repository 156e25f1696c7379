from mcpbox.support.mixins import CommonEqualityMixin


class RetryStrategy:
    """ Determines how long to wait before a retry attempt. The default is to retry immediately. """

    def __call__(self, attempt=1):
        return 0


class BackoffRetryStrategy(RetryStrategy, CommonEqualityMixin):
    """
    A delay that grows linearly with the attempt number, capped at a maximum.

    >>> BackoffRetryStrategy(1.5)(2)
    3.0
    >>> BackoffRetryStrategy(1, maximum=2)(5)
    2
    """

    def __init__(self, base_delay, maximum=None):
        """
        :param base_delay: the delay in seconds before the first attempt. Attempt n waits n times this.
        :param maximum: the longest delay in seconds, or None for no limit.
        """
        if base_delay < 0:
            raise ValueError("base_delay must not be negative")
        self.base_delay = base_delay
        self.maximum = maximum

    def __call__(self, attempt=1):
        """
        :param attempt: the 1-based attempt number
        :return: the time in seconds to wait before making the attempt
        """
        delay = self.base_delay * max(attempt, 1)
        if self.maximum is not None:
            delay = min(delay, self.maximum)
        return delay

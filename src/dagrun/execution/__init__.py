"""Execution layer: how one step instance actually runs.

- ``dagrun.execution.runner``: the runner protocol, ``SubprocessRunner`` and
  ``CallableRunner``
- ``dagrun.execution.retry``: deterministic retry strategies

The runner module depends on ``dagrun.orchestration.params`` and is not
imported here, so the orchestration models can import the retry strategies.
"""

from dagrun.execution.retry import ConstantBackoff, ExponentialBackoff, NoRetry, RetryStrategy

__all__ = ["RetryStrategy", "ExponentialBackoff", "ConstantBackoff", "NoRetry"]

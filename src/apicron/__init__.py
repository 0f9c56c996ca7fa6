"""
apicron - scheduled API call dispatch, execution and monitoring.

Three cooperating loops share one persisted schedule store:

- **Dispatcher** (every minute): finds due cron schedules and submits
  execution tasks.
- **ExecutionWorker** (pool): runs tasks against the call-execution
  collaborator with timeout, retry and backoff.
- **Monitor** (every five minutes): read-only sweeps for failed, stuck
  and stale schedules plus an aggregate summary.
"""

__version__ = "0.1.0"

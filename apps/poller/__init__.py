"""
Poller App - Continuous Feed Polling

Responsibilities:
- Resume from the persisted cursor (nextfrom_timestamp.txt), or start 60
  minutes back when there is none
- Query [cursor, now - 5 min) windows, saving the cursor after each fetch
- Re-query immediately when a page came back full, otherwise pace requests
  to POLL_INTERVAL_SECONDS
- Retry failed fetches after LIVE_RETRY_DELAY_SECONDS
- Log a status heartbeat and optionally publish batch events to Redis
- Stop cleanly on SIGINT/SIGTERM
"""

"""
Backfill App - Bounded Historical Fetch

Responsibilities:
- Validate positional arguments: apiKey, from, to, optional maxCount
- Fetch [from, to) page by page, moving the cursor past the last post of
  each page, until a request comes back empty
- Write every non-empty page to OUTPUT_DIR as '<window start>.xml'
- Retry failed requests after BACKFILL_RETRY_DELAY_SECONDS

Usage:
    python -m apps.backfill "<apikey>" "2024-01-01 00:00:00Z" "2024-01-02 00:00:00Z" [100]
"""

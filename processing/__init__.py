"""Progressive feedback engine: retries, cancellation, fallbacks and summaries."""

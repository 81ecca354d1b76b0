"""NepseWatch core package.

Market data acquisition from the exchange website and the job scheduler
that drives it:
- browser: Playwright session lifecycle (explicit state machine)
- extractor: ordered extraction strategies and the pipeline that runs them
- prices / market / company / history: per-domain strategy chains
- operation: retry/backoff envelope around a pipeline
- scheduler / jobs / stats_store: job registry, mutual exclusion, watchdog and stats
- tasks / triggers: job bodies and their APScheduler triggers
- sinks: idempotent persistence of scraped records
- reporter: price workbook and scheduler health dashboard
- models / parsers: canonical records and tolerant numeric parsing
- logger / exceptions: loguru setup and the error hierarchy
"""

__version__ = "1.0.0"

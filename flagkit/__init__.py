"""Feature flag building blocks: operators, legacy evaluation, polling, file data sources and stores."""

__version__ = "0.1.0"
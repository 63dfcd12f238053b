"""PaySurity delivery dispatch: one interface over internal and external delivery providers."""

__version__ = "1.0.0"

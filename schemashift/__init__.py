"""Database migration drivers, version bookkeeping and a command line for creating migration files."""

__version__ = "0.1.0"
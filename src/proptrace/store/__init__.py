"""Persistence layer for trace records, bulk jobs and wallets.

Each store wraps a handful of SQLAlchemy Core statements against the tables in
:mod:`proptrace.store.sql` and hands plain dataclasses back to the services.
"""

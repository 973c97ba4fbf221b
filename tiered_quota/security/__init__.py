"""Account lookup for the tiered quota service."""

from .accounts import Account, AccountDirectory, InMemoryAccountDirectory

__all__ = ['Account', 'AccountDirectory', 'InMemoryAccountDirectory']

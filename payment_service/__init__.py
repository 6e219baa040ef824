"""Deposit-to-settlement payment session service."""

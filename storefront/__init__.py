"""Storefront checkout, mobile-money reconciliation and flash-sale inventory service."""

__version__ = "1.0.0"

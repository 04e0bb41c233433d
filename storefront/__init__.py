"""Storefront checkout and payment-confirmation service."""

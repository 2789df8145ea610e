"""Storefront order service."""

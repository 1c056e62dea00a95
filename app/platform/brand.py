"""Centralized brand configuration for user-facing copy."""

BRAND_NAME = "ORO"
BRAND_DOMAIN = "oro.so"
BRAND_PRODUCT_NAME = "Creator Operating System"
BRAND_APP_DESCRIPTION = "Credit ledger API for the ORO creator operating system"

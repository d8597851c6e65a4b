"""Foundational pieces shared by every layer: configuration and logging setup."""

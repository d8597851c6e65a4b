"""Credential Vault package. Only the service root and the Process Driver import it."""

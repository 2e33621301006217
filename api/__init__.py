"""Serverless entry points for the WebAuthn gateway."""

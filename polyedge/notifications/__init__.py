"""Outbound alert formatting for the approval channel."""

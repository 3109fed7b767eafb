"""Auxiliary model calls made around an exchange."""

from .summarizer import DEFAULT_SUMMARY_MAX_LENGTH, SUMMARY_INSTRUCTION, Summarizer

__all__ = ["DEFAULT_SUMMARY_MAX_LENGTH", "SUMMARY_INSTRUCTION", "Summarizer"]

"""Maintainer brief: scheduled and on-demand AI summaries of GitHub repository activity."""

__version__ = "0.1.0"

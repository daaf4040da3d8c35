"""Hack-Buddy: team formation and chat for hackathon participants."""

__version__ = "0.1.0"

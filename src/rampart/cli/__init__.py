"""
rampart CLI — Typer application for inspecting the resilience layer.

Usage::

    rampart --help
    rampart classify "ETIMEDOUT while calling upstream"
    rampart redact "token=abc123 from 10.0.0.7"
    rampart presets --retry
    rampart queue list ai_service
"""

"""
brewops - Homebrew operations with live output

Runs one Homebrew operation at a time (install, Brewfile import, service
control, quarantine removal...), streams its output as it happens, and
re-reads Homebrew state when it finishes.
"""

__version__ = "1.0.0"

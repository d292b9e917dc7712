"""Wallpapy - feedback-driven wallpaper generation."""

__version__ = "0.3.0"

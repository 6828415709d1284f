"""Folder and file storage API with public/private visibility."""

__version__ = "1.0.0"

"""Application package initialization.

Having this file ensures the 'app' directory is recognized as a standard
Python package during test discovery and editable installs.
"""

__all__: list[str] = []

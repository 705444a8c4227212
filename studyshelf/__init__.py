"""Study Shelf: folders, topics, lessons and their attached study files."""

__version__ = "0.1.0"

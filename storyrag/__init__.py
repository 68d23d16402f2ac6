"""storyrag: hybrid retrieval and ranking for narrative knowledge bases."""

__version__ = "0.1.0"

"""wiggum: a git-backed ticket queue shared by concurrent agents."""

__version__ = "0.1.0"

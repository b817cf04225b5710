"""Production implementations of the hosting and language-model collaborators."""

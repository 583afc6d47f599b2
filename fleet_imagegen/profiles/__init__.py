"""Device profile management: packages, kernel selection, revisions."""

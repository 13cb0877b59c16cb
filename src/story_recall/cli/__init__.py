"""story-recall command line interface."""

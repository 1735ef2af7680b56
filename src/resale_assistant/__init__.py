"""Photo-to-listing assistant for secondhand items."""

"""Command-line interface (``apicron``)."""

"""UDP discovery listeners and the dashboard web server."""

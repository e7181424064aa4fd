"""HTTP control surface for jobs and login handshakes."""

"""HTTP access to the remote jobs API."""

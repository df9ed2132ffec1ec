"""Analysis and data management services for factorial-de."""

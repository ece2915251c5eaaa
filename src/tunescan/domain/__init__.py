"""Domain layer - entities and exceptions shared by queue, worker and scanner."""

"""Infrastructure package: in-process background execution."""

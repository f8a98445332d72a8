"""Backend adapters implementing the core ports."""

"""Entry points invoked by the external scheduler."""

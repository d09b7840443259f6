"""Loading analyses from yaml files."""

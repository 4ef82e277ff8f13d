"""Project table loading from YAML configuration."""

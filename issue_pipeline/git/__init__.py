"""Version-control emission for resolved issues."""

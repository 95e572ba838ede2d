"""HTTP surface: health, cycle inspection and deployment status."""

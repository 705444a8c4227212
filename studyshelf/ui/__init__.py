"""Console front-ends rendering the current navigation view."""

"""Line health monitoring and contact availability resolution."""

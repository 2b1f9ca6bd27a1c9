"""Live like/dislike voting for classroom presentations."""

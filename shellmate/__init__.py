"""shellmate: a sandboxed command-line agent for reading, writing and running things."""

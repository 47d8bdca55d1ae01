"""HTTP API for element-type import jobs."""

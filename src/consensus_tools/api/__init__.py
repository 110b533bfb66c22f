"""HTTP surface: FastAPI server and httpx client."""

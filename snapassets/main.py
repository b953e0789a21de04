from .app import create_app

app = create_app()

# Run: uvicorn snapassets.main:app --reload

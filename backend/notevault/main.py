from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from notevault.api import router
from notevault.config import Settings, configure_logging

settings = Settings.from_env()
configure_logging(settings.log_level)

app = FastAPI(title="NoteVault Core")

# Enable CORS for local development (Frontend on different port)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api")

@app.get("/")
def health_check():
    return {"status": "NoteVault Engine Running"}

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .models import Base
from .database import engine
from . import api

logging.basicConfig(level=logging.INFO)

# Initialize DB
Base.metadata.create_all(bind=engine)

app = FastAPI(title="Order Lifecycle & Logistics Engine")

app.include_router(api.router)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    return {"status": "ok"}

# Copyright iX.
# SPDX-License-Identifier: MIT-0
import uvicorn
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from core.config import app_config
from common.logger import logger
from api.analysis import router as analysis_router, get_analysis_service


# Get configurations from app_config
server_config = app_config.server_config
cors_config = app_config.cors_config

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for FastAPI app"""
    try:
        # Startup
        logger.info("Initializing application...")
        service = get_analysis_service()
        settings = service.load_settings()
        logger.info(f"Model endpoint {settings.api_endpoint}, model {settings.model_name}, "
                    f"{len(service.prompt_tree)} prompts loaded")
        logger.info("Application initialization complete")
        yield
    except Exception as e:
        logger.error(f"Failed to initialize application: {str(e)}")
        raise
    finally:
        # Shutdown
        logger.info("Shutting down application...")

# Create FastAPI app
app = FastAPI(lifespan=lifespan)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_config['allow_origins'],
    allow_credentials=True,
    allow_methods=cors_config['allow_methods'],
    allow_headers=cors_config['allow_headers'],
    expose_headers=["*"],
    max_age=3600
)

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "OK!"}

# Include API routes
app.include_router(analysis_router, prefix="/api")

if __name__ == "__main__":
    # Start server with configuration from app_config
    uvicorn.run(
        app,
        host=server_config['host'],
        port=server_config['port'],
        log_level=server_config['log_level']
    )

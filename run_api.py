import uvicorn

from automations import config

if __name__ == "__main__":
    uvicorn.run(
        "automations.main:app",
        host=config.API_HOST,
        port=config.API_PORT,
        log_level=config.LOG_LEVEL.lower(),
    )

import modal

app = modal.App("esp-integration")

image = (
    modal.Image.debian_slim(python_version="3.11")
    .pip_install(
        "fastapi>=0.115.0",
        "uvicorn>=0.30.0",
        "pydantic>=2.7",
        "pydantic-settings>=2.3",
        "httpx>=0.27",
        "supabase>=2.5",
        "cryptography>=42.0",
    )
    .add_local_python_source("esp_integration")
)


@app.function(image=image, secrets=[modal.Secret.from_name("esp-integration")])
@modal.asgi_app()
def fastapi_app():
    from esp_integration.main import app as web_app

    return web_app

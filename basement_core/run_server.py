"""
Server runner for the control plane API.
Usage: python -m basement_core.run_server
"""
import os


def main():
    import uvicorn

    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8001"))

    print("Starting Basement Control Plane API...")
    print(f"  DIGITALOCEAN_TOKEN: {'set' if os.environ.get('DIGITALOCEAN_TOKEN') else 'NOT SET'}")
    print(f"  STRIPE_SECRET_KEY: {'set' if os.environ.get('STRIPE_SECRET_KEY') else 'NOT SET'}")

    uvicorn.run(
        "basement_core.app:app",
        host=host,
        port=port,
        log_level="info",
    )


if __name__ == "__main__":
    main()

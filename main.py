from services.order_service.main import create_app

# Mounted sub-apps do not run their own lifespan, so the orders app is served directly
app = create_app()

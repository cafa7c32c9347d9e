from app.formtrack import create_app

app = create_app()

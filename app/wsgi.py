from app.aba import create_app

app = create_app()

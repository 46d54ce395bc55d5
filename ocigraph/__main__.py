from ocigraph.cli import app

app()

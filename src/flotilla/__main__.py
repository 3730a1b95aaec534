from flotilla.cli import app

app(prog_name="flotilla")

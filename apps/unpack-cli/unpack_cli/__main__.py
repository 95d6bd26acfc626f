from unpack_cli.cli import app

app(prog_name="pass-ssh-unpack")

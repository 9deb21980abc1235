from labkeeper.cli.main import cli

cli(obj={})

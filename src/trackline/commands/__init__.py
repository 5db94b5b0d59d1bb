"""click subcommands for the tl CLI."""

import logging
import click
from ._constants import CONFIG_PATH, DEFAULT_SERVER_PORT
from ._config import ServerConfig, load_config
from ._handshake import compute_accept_key
from ._server import WebSocketServer
from .console import ConsoleCommandMap, ConsoleLogHandler
from .utils import setup_logging


@click.group()
def main():
    pass


@main.command("serve")
@click.option("--config", "config_path", type=click.Path(file_okay=True, dir_okay=False, path_type=str), default=CONFIG_PATH, help="YAML or JSON config file.")
@click.option("--host", type=str, default=None, help="Bind address (websocket-host).")
@click.option("--port", type=str, default=None, help="Port to listen on (websocket-port), or 'default' to use --server-port.")
@click.option("--server-port", type=int, default=DEFAULT_SERVER_PORT, show_default=True, help="Port of the host application.")
@click.option("--password", type=str, default=None, help="Password required from clients (websocket-password).")
@click.option("--max-connections", type=int, default=None, help="Maximum number of connections (max-connections).")
@click.option("--tick-interval", type=float, default=0.05, show_default=True, help="Seconds between two ticks.")
@click.option("--relay-logs/--no-relay-logs", default=True, help="Relay the console log output to connected clients.")
@click.option("--verbose", "-v", is_flag=True)
def serve_command(config_path, host, port, server_port, password, max_connections, tick_interval, relay_logs, verbose):
    try:
        config = ServerConfig.from_env(base=load_config(config_path))
        overrides = {
            "websocket-host": host,
            "websocket-port": port,
            "websocket-password": password,
            "max-connections": max_connections,
        }
        config = ServerConfig.from_dict({
            **config.to_dict(),
            **{k: v for k, v in overrides.items() if v is not None},
        })
    except ValueError as e:
        raise click.BadParameter(str(e))
    setup_logging(verbose or config.debug)

    console = ConsoleCommandMap()
    server = WebSocketServer(
        config,
        executor=console,
        status_provider=console.get_status,
        host_port=server_port)
    console.server = server
    if not server.start():
        raise click.exceptions.Exit(1)

    log_handler = None
    if relay_logs:
        log_handler = ConsoleLogHandler(server)
        logging.getLogger().addHandler(log_handler)
    try:
        server.run_forever(tick_interval, should_stop=lambda: console.stop_requested)
    except KeyboardInterrupt:
        logging.info("Interrupted, shutting down")
    finally:
        if log_handler is not None:
            logging.getLogger().removeHandler(log_handler)
        server.stop()


@main.command("accept-key")
@click.argument("key", type=str, required=True)
def accept_key_command(key: str):
    """Print the Sec-WebSocket-Accept value for a Sec-WebSocket-Key."""
    click.echo(compute_accept_key(key))


if __name__ == "__main__":
    main()

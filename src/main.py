"""Main entry point for the Sketchmap drawing tile service."""

import argparse
import json
import logging
import sys
from pathlib import Path

from aiohttp import web

from domain.errors import LockAcquisitionError
from services.cleanup import CleanupService, list_deletion_records
from settings import AppConfig, ServiceEnv, load_config
from shared.diagnostics import (
    ensure_writable_dir,
    log_comprehensive_diagnostics,
    log_memory_usage,
    log_thread_status,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_LOCKED = 2


def setup_logging(log_dir: Path | None = None, level: int = logging.INFO) -> Path | None:
    """Configure logging to stdout and, if log_dir is given, a UTF-8 file.

    Returns:
        Path of the log file or None.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = None
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / 'sketchmap.log'
        handlers.append(logging.FileHandler(str(log_file), encoding='utf-8'))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )
    return log_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Sketchmap - рисование поверх карты, хранение тайлов и очистка'
    )
    parser.add_argument('--config', help='Путь к TOML конфигурации')
    parser.add_argument('--log-dir', type=Path, help='Каталог для файла журнала')
    parser.add_argument('--verbose', '-v', action='store_true', help='Уровень DEBUG')

    sub = parser.add_subparsers(dest='command', required=True)

    serve = sub.add_parser('serve', help='Запустить HTTP API')
    serve.add_argument('--host', help='Адрес (по умолчанию из конфигурации)')
    serve.add_argument('--port', type=int, help='Порт (по умолчанию из конфигурации)')
    serve.add_argument(
        '--no-scheduler', action='store_true', help='Не запускать периодическую очистку'
    )

    sub.add_parser('cleanup', help='Выполнить одну очистку и вывести результат')
    records = sub.add_parser('records', help='Показать последние записи об очистке')
    records.add_argument('--limit', type=int, default=20)
    sub.add_parser('init-db', help='Создать схему базы и каталог блобов')
    return parser


def _prepare_storage(config: AppConfig) -> None:
    ensure_writable_dir(Path(config.storage.blob_root))
    ensure_writable_dir(Path(config.storage.database_path).parent)


def cmd_serve(args: argparse.Namespace, config: AppConfig) -> int:
    from server.app import create_app

    _prepare_storage(config)
    env = ServiceEnv.from_config(config)
    log_comprehensive_diagnostics(
        'SERVER_STARTUP',
        db_path=config.storage.database_path,
        blob_root=config.storage.blob_root,
    )
    app = create_app(env, with_scheduler=not args.no_scheduler)
    host = args.host or config.server.host
    port = args.port or config.server.port
    logger.info(
        'Starting Sketchmap API on %s:%d (environment=%s)',
        host,
        port,
        config.server.environment.value,
    )
    try:
        web.run_app(app, host=host, port=port, print=None)
    finally:
        log_thread_status('shutdown')
        env.close()
        log_comprehensive_diagnostics('SERVER_SHUTDOWN')
    return EXIT_OK


def cmd_cleanup(config: AppConfig) -> int:
    _prepare_storage(config)
    env = ServiceEnv.from_config(config)
    try:
        result = CleanupService(env).execute_cleanup()
    except LockAcquisitionError as e:
        logger.warning('Cleanup skipped: %s', e)
        return EXIT_LOCKED
    finally:
        env.close()
    print(json.dumps(result.model_dump(mode='json'), ensure_ascii=False, indent=2))
    return EXIT_OK if result.success else EXIT_ERROR


def cmd_records(args: argparse.Namespace, config: AppConfig) -> int:
    env = ServiceEnv.from_config(config)
    try:
        records = list_deletion_records(env.db, args.limit)
    finally:
        env.close()
    print(
        json.dumps(
            [r.model_dump(mode='json') for r in records], ensure_ascii=False, indent=2
        )
    )
    return EXIT_OK


def cmd_init_db(config: AppConfig) -> int:
    _prepare_storage(config)
    env = ServiceEnv.from_config(config)
    env.close()
    logger.info(
        'Storage initialized: db=%s, blobs=%s',
        config.storage.database_path,
        config.storage.blob_root,
    )
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Main application entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_dir, logging.DEBUG if args.verbose else logging.INFO)
    logger.info('Starting Sketchmap (%s)', args.command)

    try:
        config = load_config(args.config)
        log_memory_usage('after loading config')
        if args.command == 'serve':
            return cmd_serve(args, config)
        if args.command == 'cleanup':
            return cmd_cleanup(config)
        if args.command == 'records':
            return cmd_records(args, config)
        return cmd_init_db(config)
    except Exception as e:
        logger.error(f'Command {args.command} failed: {e}', exc_info=True)
        log_comprehensive_diagnostics('APPLICATION_ERROR')
        return EXIT_ERROR


if __name__ == '__main__':
    sys.exit(main())

import sys

from application.services import LedgerService
from config import configure_logging, create_record_store, load_settings
from infrastructure.crypto import SystemCryptoProvider
from interfaces.cli.commands import main as run_command


def create_service() -> LedgerService:
    settings = load_settings()
    configure_logging(settings)
    return LedgerService(create_record_store(settings), SystemCryptoProvider())


def main() -> None:
    sys.exit(run_command(sys.argv[1:], create_service()))


if __name__ == "__main__":
    main()

from tenanthub.adapters.database.postgres import PostgresDatabaseManager

__all__ = ["PostgresDatabaseManager"]

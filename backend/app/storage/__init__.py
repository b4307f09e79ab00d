"""
storage — SQLAlchemy-backed repositories (STORAGE_BACKEND=database).

Modules:
    tables          — ORM tables
    sql_warnings    — WarningRepository
    sql_recipients  — RecipientDirectory
"""

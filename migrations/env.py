import logging
from logging.config import fileConfig

from alembic import context

# O Alembic precisa do app Flask para ler a URL do banco e do 'db' para
# descobrir os modelos (tabelas) declarados em main.py.
from main import app, db

config = context.config

# Logging do Alembic a partir do alembic.ini
if config.config_file_name is not None:
    fileConfig(config.config_file_name)
logger = logging.getLogger('alembic.env')

target_metadata = db.metadata


def run_migrations_offline() -> None:
    """Gera o SQL das migrações sem conectar ao banco (modo offline)."""
    url = app.config.get('SQLALCHEMY_DATABASE_URI')
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Aplica as migrações conectando ao banco configurado no app."""

    def process_revision_directives(context_, revision, directives):
        # Não gera arquivo de revisão vazio no autogenerate
        if getattr(config.cmd_opts, 'autogenerate', False):
            script = directives[0]
            if script.upgrade_ops.is_empty():
                directives[:] = []
                logger.info('Nenhuma alteração de esquema detectada.')

    with app.app_context():
        connectable = db.engine

        with connectable.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                compare_type=True,
                render_as_batch=connection.dialect.name == 'sqlite',
                process_revision_directives=process_revision_directives,
            )

            with context.begin_transaction():
                context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()

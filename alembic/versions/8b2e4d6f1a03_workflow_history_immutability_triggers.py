"""workflow_history_immutability_triggers

Revision ID: 8b2e4d6f1a03
Revises: 3f1c0a7d2b91
Create Date: 2026-10-02 11:02:17.904415

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '8b2e4d6f1a03'
down_revision: Union[str, Sequence[str], None] = '3f1c0a7d2b91'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    if op.get_bind().dialect.name == "sqlite":
        for verb in ("update", "delete"):
            op.execute(
                f"""
                CREATE TRIGGER IF NOT EXISTS trg_workflow_history_block_{verb}
                BEFORE {verb.upper()} ON workflow_history
                FOR EACH ROW
                BEGIN
                    SELECT RAISE(ABORT, 'workflow_history is immutable');
                END;
                """
            )
        return

    op.execute(
        """
        CREATE OR REPLACE FUNCTION workflow_history_block_mutation()
        RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'workflow_history is immutable';
        END;
        $$ LANGUAGE plpgsql;

        DROP TRIGGER IF EXISTS trg_workflow_history_block_update ON workflow_history;
        CREATE TRIGGER trg_workflow_history_block_update
        BEFORE UPDATE ON workflow_history
        FOR EACH ROW
        EXECUTE FUNCTION workflow_history_block_mutation();

        DROP TRIGGER IF EXISTS trg_workflow_history_block_delete ON workflow_history;
        CREATE TRIGGER trg_workflow_history_block_delete
        BEFORE DELETE ON workflow_history
        FOR EACH ROW
        EXECUTE FUNCTION workflow_history_block_mutation();
        """
    )


def downgrade() -> None:
    """Downgrade schema."""
    if op.get_bind().dialect.name == "sqlite":
        op.execute("DROP TRIGGER IF EXISTS trg_workflow_history_block_update")
        op.execute("DROP TRIGGER IF EXISTS trg_workflow_history_block_delete")
        return

    op.execute(
        """
        DROP TRIGGER IF EXISTS trg_workflow_history_block_update ON workflow_history;
        DROP TRIGGER IF EXISTS trg_workflow_history_block_delete ON workflow_history;
        DROP FUNCTION IF EXISTS workflow_history_block_mutation();
        """
    )

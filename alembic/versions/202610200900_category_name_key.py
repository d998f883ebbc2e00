"""casefolded category name key

Revision ID: 202610200900
Revises: 202610190900
Create Date: 2026-10-20 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610200900"
down_revision = "202610190900"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("categories") as batch_op:
        batch_op.add_column(sa.Column("name_key", sa.Text(), nullable=True))

    conn = op.get_bind()
    rows = conn.execute(sa.text("SELECT id, name FROM categories")).fetchall()
    for row in rows:
        conn.execute(
            sa.text("UPDATE categories SET name_key = :key WHERE id = :id"),
            {"key": row.name.strip().casefold(), "id": row.id},
        )

    with op.batch_alter_table("categories") as batch_op:
        batch_op.alter_column("name_key", existing_type=sa.Text(), nullable=False)
        batch_op.drop_constraint("uq_category_user_name", type_="unique")
        batch_op.create_unique_constraint(
            "uq_category_user_name_key", ["user_id", "name_key"]
        )


def downgrade():
    with op.batch_alter_table("categories") as batch_op:
        batch_op.drop_constraint("uq_category_user_name_key", type_="unique")
        batch_op.create_unique_constraint(
            "uq_category_user_name", ["user_id", "name"]
        )
        batch_op.drop_column("name_key")

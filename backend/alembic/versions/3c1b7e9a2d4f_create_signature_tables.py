"""create_signature_tables

Revision ID: 3c1b7e9a2d4f
Revises:
Create Date: 2026-03-14 10:21:47.513902

"""
from alembic import op
import sqlalchemy as sa
import pgvector.sqlalchemy


# revision identifiers, used by Alembic.
revision = '3c1b7e9a2d4f'
down_revision = None
branch_labels = None
depends_on = None

# students and attendance belong to the admin panel schema and already exist

def upgrade() -> None:

    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        "signature_images",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("storage_path", sa.String(), nullable=False),
        sa.Column("public_url", sa.String(), nullable=False),
        sa.Column(
            "uploaded_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True
        ),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(["student_id"], ["students.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id")
    )
    op.create_index(op.f("ix_signature_images_id"), "signature_images", ["id"], unique=False)
    op.create_index(op.f("ix_signature_images_student_id"), "signature_images", ["student_id"], unique=False)
    op.create_index(op.f("ix_signature_images_uploaded_at"), "signature_images", ["uploaded_at"], unique=False)

    op.create_table(
        "signature_embeddings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("image_id", sa.Integer(), nullable=True),
        sa.Column(
            "embedding",
            pgvector.sqlalchemy.vector.VECTOR(dim=512),
            nullable=False
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True
        ),
        sa.ForeignKeyConstraint(["student_id"], ["students.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["image_id"], ["signature_images.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id")
    )
    op.create_index(op.f("ix_signature_embeddings_id"), "signature_embeddings", ["id"], unique=False)
    op.create_index(op.f("ix_signature_embeddings_student_id"), "signature_embeddings", ["student_id"], unique=False)

    # Approximate KNN for the <=> operator used by search_similar_embeddings
    op.create_index(
        "ix_signature_embeddings_embedding_hnsw",
        "signature_embeddings",
        ["embedding"],
        unique=False,
        postgresql_using="hnsw",
        postgresql_with={"m": 16, "ef_construction": 64},
        postgresql_ops={"embedding": "vector_cosine_ops"}
    )

    op.create_table(
        "signature_profiles",
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="untrained"),
        sa.Column(
            "embedding_centroid",
            pgvector.sqlalchemy.vector.VECTOR(dim=512),
            nullable=True
        ),
        sa.Column("num_samples", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("threshold", sa.Float(), nullable=True),
        sa.Column("last_trained_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["student_id"], ["students.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("student_id")
    )

    op.create_table(
        "signature_verification_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=True),
        sa.Column("candidate_student_id", sa.Integer(), nullable=True),
        sa.Column("predicted_student_id", sa.Integer(), nullable=True),
        sa.Column("score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("decision", sa.String(length=16), nullable=False),
        sa.Column("image_public_url", sa.String(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True
        ),
        sa.PrimaryKeyConstraint("id")
    )
    op.create_index(op.f("ix_signature_verification_events_id"), "signature_verification_events", ["id"], unique=False)
    op.create_index(op.f("ix_signature_verification_events_session_id"), "signature_verification_events", ["session_id"], unique=False)
    op.create_index(op.f("ix_signature_verification_events_predicted_student_id"), "signature_verification_events", ["predicted_student_id"], unique=False)
    op.create_index(op.f("ix_signature_verification_events_created_at"), "signature_verification_events", ["created_at"], unique=False)


def downgrade() -> None:

    op.drop_index(op.f("ix_signature_verification_events_created_at"), table_name="signature_verification_events")
    op.drop_index(op.f("ix_signature_verification_events_predicted_student_id"), table_name="signature_verification_events")
    op.drop_index(op.f("ix_signature_verification_events_session_id"), table_name="signature_verification_events")
    op.drop_index(op.f("ix_signature_verification_events_id"), table_name="signature_verification_events")
    op.drop_table("signature_verification_events")

    op.drop_table("signature_profiles")

    op.drop_index("ix_signature_embeddings_embedding_hnsw", table_name="signature_embeddings")
    op.drop_index(op.f("ix_signature_embeddings_student_id"), table_name="signature_embeddings")
    op.drop_index(op.f("ix_signature_embeddings_id"), table_name="signature_embeddings")
    op.drop_table("signature_embeddings")

    op.drop_index(op.f("ix_signature_images_uploaded_at"), table_name="signature_images")
    op.drop_index(op.f("ix_signature_images_student_id"), table_name="signature_images")
    op.drop_index(op.f("ix_signature_images_id"), table_name="signature_images")
    op.drop_table("signature_images")

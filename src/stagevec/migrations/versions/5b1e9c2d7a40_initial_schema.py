"""Initial chunk store schema

Revision ID: 5b1e9c2d7a40
Revises: 
Create Date: 2026-10-19 09:12:41.503117

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5b1e9c2d7a40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # Create document table
    op.create_table('document',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('path', sa.Text(), nullable=False),
        sa.Column('size', sa.BigInteger(), nullable=False),
        sa.Column('sha256', sa.Text(), nullable=False),
        sa.Column('file_url', sa.Text(), nullable=False),
        sa.Column('embed_model', sa.Text(), nullable=True),
        sa.Column('chunk_count', sa.Integer(), nullable=False),
        sa.Column('ingested_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('path')
    )
    
    # Create doc_chunk table
    op.create_table('doc_chunk',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('document_id', sa.Text(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('length', sa.Integer(), nullable=False),
        sa.Column('embedding', sa.JSON(), nullable=False),
        sa.Column('embed_model', sa.Text(), nullable=False),
        sa.Column('vector_dim', sa.Integer(), nullable=False),
        sa.Column('scoped_url', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['document_id'], ['document.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('document_id', 'sequence', name='uq_doc_chunk_sequence')
    )
    
    # Create store_meta table (pinned embedding model)
    op.create_table('store_meta',
        sa.Column('key', sa.Text(), nullable=False),
        sa.Column('value', sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint('key')
    )
    
    # Create indexes
    op.create_index('idx_doc_chunk_document_id', 'doc_chunk', ['document_id'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('idx_doc_chunk_document_id', table_name='doc_chunk')
    
    op.drop_table('store_meta')
    op.drop_table('doc_chunk')
    op.drop_table('document')

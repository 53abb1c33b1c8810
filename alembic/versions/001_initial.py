"""Initial schema for the PhotoStudio backend

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # Create collections table
    op.create_table('collections',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('user_id', sa.String(length=64), nullable=False),
    sa.Column('name', sa.String(length=255), nullable=False),
    sa.Column('fixed_elements', JSONType, nullable=True),
    sa.Column('prompt_templates', JSONType, nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_collections_user_id'), 'collections', ['user_id'], unique=False)

    # Create products table
    op.create_table('products',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('user_id', sa.String(length=64), nullable=False),
    sa.Column('collection_id', sa.String(length=36), nullable=True),
    sa.Column('name', sa.String(length=255), nullable=False),
    sa.Column('front_image_url', sa.Text(), nullable=True),
    sa.Column('back_image_url', sa.Text(), nullable=True),
    sa.Column('reference_images', JSONType, nullable=True),
    sa.Column('analyzed_product_json', JSONType, nullable=True),
    sa.Column('manual_product_overrides', JSONType, nullable=True),
    sa.Column('final_product_json', JSONType, nullable=True),
    sa.Column('analyzed_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.ForeignKeyConstraint(['collection_id'], ['collections.id'], ondelete='SET NULL'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_products_user_id'), 'products', ['user_id'], unique=False)
    op.create_index(op.f('ix_products_collection_id'), 'products', ['collection_id'], unique=False)

    # Create da_presets table
    op.create_table('da_presets',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('code', sa.String(length=64), nullable=False),
    sa.Column('name', sa.String(length=255), nullable=False),
    sa.Column('description', sa.Text(), nullable=True),
    sa.Column('is_default', sa.Boolean(), nullable=False),
    sa.Column('background_type', sa.String(length=255), nullable=False),
    sa.Column('background_hex', sa.String(length=16), nullable=False),
    sa.Column('floor_type', sa.String(length=255), nullable=False),
    sa.Column('floor_hex', sa.String(length=16), nullable=False),
    sa.Column('props_left', JSONType, nullable=True),
    sa.Column('props_right', JSONType, nullable=True),
    sa.Column('styling_pants', sa.String(length=255), nullable=True),
    sa.Column('styling_footwear', sa.String(length=255), nullable=True),
    sa.Column('lighting_type', sa.String(length=255), nullable=False),
    sa.Column('lighting_temperature', sa.String(length=64), nullable=False),
    sa.Column('mood', sa.Text(), nullable=True),
    sa.Column('quality', sa.Text(), nullable=True),
    sa.Column('additional_config', JSONType, nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('code')
    )

    # Create generations table
    op.create_table('generations',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('product_id', sa.String(length=36), nullable=False),
    sa.Column('collection_id', sa.String(length=36), nullable=True),
    sa.Column('user_id', sa.String(length=64), nullable=False),
    sa.Column('generation_type', sa.String(length=32), nullable=False),
    sa.Column('merged_prompts', JSONType, nullable=True),
    sa.Column('aspect_ratio', sa.String(length=16), nullable=False),
    sa.Column('resolution', sa.String(length=8), nullable=False),
    sa.Column('visuals', JSONType, nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('current_step', sa.String(length=255), nullable=True),
    sa.Column('progress_percent', sa.Integer(), nullable=False),
    sa.Column('completed_visuals_count', sa.Integer(), nullable=False),
    sa.Column('error_message', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('started_at', sa.DateTime(), nullable=True),
    sa.Column('completed_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.Column('version', sa.Integer(), nullable=False),
    sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
    sa.ForeignKeyConstraint(['collection_id'], ['collections.id'], ondelete='SET NULL'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_generations_product_id'), 'generations', ['product_id'], unique=False)
    op.create_index(op.f('ix_generations_collection_id'), 'generations', ['collection_id'], unique=False)
    op.create_index(op.f('ix_generations_user_id'), 'generations', ['user_id'], unique=False)
    op.create_index(op.f('ix_generations_status'), 'generations', ['status'], unique=False)
    op.create_index(op.f('ix_generations_created_at'), 'generations', ['created_at'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_generations_created_at'), table_name='generations')
    op.drop_index(op.f('ix_generations_status'), table_name='generations')
    op.drop_index(op.f('ix_generations_user_id'), table_name='generations')
    op.drop_index(op.f('ix_generations_collection_id'), table_name='generations')
    op.drop_index(op.f('ix_generations_product_id'), table_name='generations')
    op.drop_table('generations')
    op.drop_table('da_presets')
    op.drop_index(op.f('ix_products_collection_id'), table_name='products')
    op.drop_index(op.f('ix_products_user_id'), table_name='products')
    op.drop_table('products')
    op.drop_index(op.f('ix_collections_user_id'), table_name='collections')
    op.drop_table('collections')

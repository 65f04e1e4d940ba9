"""baseline: schema created by create_all

Revision ID: 001
Revises: None
Create Date: 2025-10-20

Fresh databases get every table from ``Base.metadata.create_all`` and are
stamped at head; this revision only anchors the chain.
"""

from typing import Sequence, Union

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    pass


def downgrade() -> None:
    pass

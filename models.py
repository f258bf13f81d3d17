from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid_utils
import uuid


def generate_uuid7():
    """Generate UUIDv7 and convert to standard Python UUID"""
    uuid7_obj = uuid_utils.uuid7()
    return uuid.UUID(str(uuid7_obj))

Base = declarative_base()


class ShopVideo(Base):
    __tablename__ = 'shop_videos'

    aweme_id = Column(String(64), primary_key=True)
    username = Column(String(200), index=True)
    caption = Column(Text)
    views = Column(Integer, default=0, nullable=False)
    likes = Column(Integer, default=0, nullable=False)
    shares = Column(Integer, default=0, nullable=False)
    comments = Column(Integer, default=0, nullable=False)
    video_url = Column(Text)
    audio_url = Column(Text)
    thumbnail_url = Column(Text)
    video_duration = Column(Integer)
    video_ratio = Column(String(32))
    share_url = Column(Text)
    music_title = Column(String(500))
    created_at = Column(DateTime(timezone=True), index=True)
    on_screen_text = Column(Text)
    spark = Column(Boolean, default=False, nullable=False)
    commission_tag = Column(String(200))
    shop = Column(Boolean, default=False, nullable=False)
    product_id = Column(String(64), index=True)
    product_link = Column(String(500))

    # Filled in later by the enrichment cycle
    product_name = Column(Text)
    product_image = Column(Text)
    price = Column(String(64))
    shop_name = Column(String(500))

    first_seen_at = Column(DateTime(timezone=True), default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<ShopVideo(aweme_id={self.aweme_id}, username='{self.username}', product_id={self.product_id})>"


class ShopProduct(Base):
    __tablename__ = 'shop_products'

    product_id = Column(String(64), primary_key=True)
    product_name = Column(Text)
    product_image = Column(Text)
    price = Column(String(64))
    shop_name = Column(String(500))
    cached_at = Column(DateTime(timezone=True), default=func.now(), nullable=False)

    def __repr__(self):
        return f"<ShopProduct(product_id={self.product_id}, name='{self.product_name}')>"


class BlacklistedProduct(Base):
    __tablename__ = 'blacklisted_products'

    product_id = Column(String(64), primary_key=True)
    reason = Column(String(200))
    blacklisted_at = Column(DateTime(timezone=True), default=func.now(), nullable=False)

    def __repr__(self):
        return f"<BlacklistedProduct(product_id={self.product_id}, reason='{self.reason}')>"


class Hashtag(Base):
    __tablename__ = 'hashtags'

    hashtag = Column(String(200), primary_key=True)
    created_at = Column(DateTime(timezone=True), default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Hashtag(hashtag='{self.hashtag}')>"


class CreatorHandle(Base):
    __tablename__ = 'tiktok_handles'

    username = Column(String(200), primary_key=True)
    last_scraped_at = Column(DateTime(timezone=True))
    total_videos_found = Column(Integer, default=0, nullable=False)
    shop_videos_found = Column(Integer, default=0, nullable=False)
    shop_ratio = Column(Float, default=0.0, nullable=False)
    consecutive_days_no_shop = Column(Integer, default=0, nullable=False)
    consecutive_days_no_posts = Column(Integer, default=0, nullable=False)
    status = Column(String(16), default='active', nullable=False)
    discovery_source = Column(String(32), default='hashtag', nullable=False)
    created_at = Column(DateTime(timezone=True), default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_tiktok_handles_status', 'status'),
        Index('ix_tiktok_handles_last_scraped', 'last_scraped_at'),
        Index('ix_tiktok_handles_shop_ratio', 'shop_ratio'),
    )

    def __repr__(self):
        return f"<CreatorHandle(username='{self.username}', status='{self.status}', ratio={self.shop_ratio})>"


class HandleScrapeHistory(Base):
    __tablename__ = 'handle_scrape_history'

    id = Column(Uuid, primary_key=True, default=generate_uuid7)
    username = Column(String(200), nullable=False, index=True)
    scraped_at = Column(DateTime(timezone=True), default=func.now(), nullable=False, index=True)
    videos_found = Column(Integer, default=0, nullable=False)
    shop_videos_found = Column(Integer, default=0, nullable=False)
    pages_scraped = Column(Integer, default=0, nullable=False)
    success = Column(Boolean, default=True, nullable=False)
    error_message = Column(Text)

    def __repr__(self):
        return f"<HandleScrapeHistory(id={self.id}, username='{self.username}', success={self.success})>"

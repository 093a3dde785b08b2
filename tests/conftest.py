import pytest
from unittest.mock import Mock, MagicMock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from app.database import get_db
from app.auth.dependencies import get_current_user
from app.dependencies import get_gateway
from app.integrations.telegram import InviteResult, RemovalResult, TelegramGateway
from app.models import Base, Platform, Product, ProductStatus, User, UserRole


@pytest.fixture
def mock_db():
    """Mock database session"""
    db = MagicMock()
    db.query.return_value = db
    db.filter.return_value = db
    db.first.return_value = None
    db.all.return_value = []
    db.count.return_value = 0
    return db


@pytest.fixture
def mock_owner():
    """Mock tenant account"""
    user = Mock(spec=User)
    user.id = 1
    user.name = "Owner"
    user.email = "owner@test.com"
    user.role = UserRole.USER
    user.password_hash = "$2b$12$test_hash"
    return user


@pytest.fixture
def mock_gateway():
    """Telegram gateway whose calls all succeed"""
    gateway = Mock(spec=TelegramGateway)
    gateway.chat_id = "-100123"
    gateway.enabled = True
    gateway.generate_invite.return_value = InviteResult(success=True, invite_link="https://t.me/+invite")
    gateway.remove_member.return_value = RemovalResult(success=True)
    gateway.list_admins.return_value = []
    gateway.send_message.return_value = True
    gateway.is_member.return_value = True
    return gateway


@pytest.fixture
def client_with_owner(mock_db, mock_owner, mock_gateway):
    """TestClient with tenant auth, mocked DB and gateway"""
    app.dependency_overrides[get_db] = lambda: mock_db
    app.dependency_overrides[get_current_user] = lambda: mock_owner
    app.dependency_overrides[get_gateway] = lambda: mock_gateway
    client = TestClient(app)
    yield client, mock_db, mock_owner
    app.dependency_overrides.clear()


@pytest.fixture
def unauthenticated_client(mock_db, mock_gateway):
    """TestClient with mocked DB but no auth"""
    app.dependency_overrides[get_db] = lambda: mock_db
    app.dependency_overrides[get_gateway] = lambda: mock_gateway
    client = TestClient(app)
    yield client, mock_db
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db():
    """Real session on an in-memory SQLite database, schema created from the models"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def owner(db):
    user = User(name="Owner", email="owner@test.com", password_hash="x", role=UserRole.USER)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def kiwify_product(db, owner):
    product = Product(
        platform=Platform.KIWIFY,
        kiwify_id="prod-1",
        name="Curso Python",
        price=197.0,
        status=ProductStatus.ACTIVE,
        user_id=owner.id,
    )
    db.add(product)
    db.commit()
    return product


@pytest.fixture
def hotmart_product(db, owner):
    product = Product(
        platform=Platform.HOTMART,
        hotmart_id="4321",
        name="Mentoria",
        price=497.0,
        status=ProductStatus.ACTIVE,
        user_id=owner.id,
    )
    db.add(product)
    db.commit()
    return product

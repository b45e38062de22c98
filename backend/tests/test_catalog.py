"""Tests for the plan catalog and its Stripe synchronization"""
import pytest
from stripe import StripeError

from billing.core.errors import (
    PlanNotFoundError, ProviderNotConfiguredError, ProviderUnavailableError, SlugConflictError
)
from billing.models.plan import Plan
from billing.services.catalog_sync import CatalogSynchronizer
from billing.services.plan_service import (
    DEFAULT_PLANS, create_plan, delete_plan, find_plan_by_price, get_active_plans,
    get_all_plans, seed_default_plans, update_plan
)
from billing.services.stripe_gateway import UnconfiguredStripeGateway


def plan_data(slug="growth", **overrides):
    data = {
        "name": slug.title(),
        "slug": slug,
        "description": f"{slug} plan",
        "price_monthly": 2900,
        "price_yearly": 29000,
        "features": ["Feature A"],
        "sort_order": 5,
    }
    data.update(overrides)
    return data


def fake_price(**kwargs):
    return {"id": f"price_{kwargs['product']}_{kwargs['metadata']['interval']}"}


@pytest.fixture
def stripe_catalog(mock_stripe):
    """Empty Stripe catalog: product search finds nothing, creates echo predictable ids"""
    mock_stripe.Product.search.return_value = {"data": []}
    mock_stripe.Product.create.side_effect = lambda **kwargs: {"id": f"prod_{kwargs['metadata']['plan_id'][:8]}"}
    mock_stripe.Price.create.side_effect = fake_price
    return mock_stripe


class TestPlanCatalog:
    """Local plan CRUD"""

    @pytest.mark.high
    def test_create_plan_without_sync(self, db_session):
        plan = create_plan(plan_data(), db_session, sync_with_stripe=False)

        assert plan.id
        assert plan.slug == "growth"
        assert plan.is_active is True
        assert plan.stripe_price_id_monthly is None
        assert plan.stripe_price_id_yearly is None

    @pytest.mark.high
    def test_duplicate_slug_rejected(self, db_session):
        create_plan(plan_data(), db_session, sync_with_stripe=False)

        with pytest.raises(SlugConflictError):
            create_plan(plan_data(name="Other"), db_session, sync_with_stripe=False)

        assert db_session.query(Plan).count() == 1

    @pytest.mark.medium
    def test_update_slug_to_existing_rejected(self, db_session):
        create_plan(plan_data("alpha"), db_session, sync_with_stripe=False)
        beta = create_plan(plan_data("beta"), db_session, sync_with_stripe=False)

        with pytest.raises(SlugConflictError):
            update_plan(beta.id, {"slug": "alpha"}, db_session)

    @pytest.mark.medium
    def test_partial_update_only_touches_given_fields(self, db_session):
        plan = create_plan(plan_data(), db_session, sync_with_stripe=False)

        updated = update_plan(plan.id, {"name": "Growth Plus", "is_popular": True}, db_session)

        assert updated.name == "Growth Plus"
        assert updated.is_popular is True
        assert updated.price_monthly == 2900
        assert updated.slug == "growth"

    @pytest.mark.medium
    def test_amount_change_keeps_existing_price_ids(self, db_session, synced_plans):
        starter, _ = synced_plans

        updated = update_plan(starter.id, {"price_monthly": 2500}, db_session)

        assert updated.price_monthly == 2500
        assert updated.stripe_price_id_monthly == "price_starter_m"

    @pytest.mark.medium
    def test_update_unknown_plan(self, db_session):
        with pytest.raises(PlanNotFoundError):
            update_plan("missing", {"name": "x"}, db_session)

    @pytest.mark.high
    def test_delete_is_soft(self, db_session, starter_plan):
        delete_plan(starter_plan.id, db_session)

        assert get_active_plans(db_session) == []
        remaining = get_all_plans(db_session)
        assert len(remaining) == 1
        assert remaining[0].is_active is False

    @pytest.mark.medium
    def test_active_plans_ordered_by_sort_order(self, db_session):
        create_plan(plan_data("third", sort_order=3), db_session, sync_with_stripe=False)
        create_plan(plan_data("first", sort_order=1), db_session, sync_with_stripe=False)
        create_plan(plan_data("second", sort_order=2), db_session, sync_with_stripe=False)

        assert [p.slug for p in get_active_plans(db_session)] == ["first", "second", "third"]

    @pytest.mark.high
    def test_find_plan_by_price_reports_interval(self, db_session, synced_plans):
        starter, professional = synced_plans

        assert find_plan_by_price("price_pro_y", db_session) == (professional, "yearly")
        assert find_plan_by_price("price_starter_m", db_session) == (starter, "monthly")
        assert find_plan_by_price("price_unknown", db_session) == (None, None)
        assert find_plan_by_price(None, db_session) == (None, None)


class TestSeedDefaultPlans:

    @pytest.mark.high
    def test_seeds_empty_catalog_once(self, db_session):
        assert seed_default_plans(db_session) == len(DEFAULT_PLANS)
        assert seed_default_plans(db_session) == 0

        slugs = [p.slug for p in get_all_plans(db_session)]
        assert slugs == ["starter", "professional", "enterprise"]

    @pytest.mark.medium
    def test_inactive_plan_counts_as_seeded(self, db_session, starter_plan):
        delete_plan(starter_plan.id, db_session)

        assert seed_default_plans(db_session) == 0
        assert db_session.query(Plan).count() == 1


class TestCatalogSync:
    """Projection of local plans onto Stripe products and prices"""

    @pytest.mark.critical
    def test_sync_creates_product_and_both_prices(self, db_session, gateway, starter_plan, stripe_catalog):
        plan = CatalogSynchronizer(gateway).sync_plan(starter_plan.id, db_session)

        product_id = f"prod_{starter_plan.id[:8]}"
        assert plan.stripe_price_id_monthly == f"price_{product_id}_monthly"
        assert plan.stripe_price_id_yearly == f"price_{product_id}_yearly"

        stripe_catalog.Product.create.assert_called_once_with(
            api_key="sk_test_123",
            name="Starter",
            active=True,
            metadata={"plan_id": starter_plan.id},
            description="Perfect for individuals and small projects",
        )
        intervals = [c.kwargs["recurring"]["interval"] for c in stripe_catalog.Price.create.call_args_list]
        assert intervals == ["month", "year"]
        amounts = [c.kwargs["unit_amount"] for c in stripe_catalog.Price.create.call_args_list]
        assert amounts == [1900, 18200]

    @pytest.mark.critical
    def test_sync_is_idempotent(self, db_session, gateway, starter_plan, stripe_catalog):
        synchronizer = CatalogSynchronizer(gateway)
        first = synchronizer.sync_plan(starter_plan.id, db_session)
        first_ids = (first.stripe_price_id_monthly, first.stripe_price_id_yearly)

        # Second run finds the product by its plan_id tag
        stripe_catalog.Product.search.return_value = {"data": [{"id": f"prod_{starter_plan.id[:8]}"}]}
        second = synchronizer.sync_plan(starter_plan.id, db_session)

        assert (second.stripe_price_id_monthly, second.stripe_price_id_yearly) == first_ids
        assert stripe_catalog.Price.create.call_count == 2
        assert stripe_catalog.Product.create.call_count == 1
        stripe_catalog.Product.modify.assert_called_once()

    @pytest.mark.critical
    def test_partial_failure_keeps_created_price(self, db_session, gateway, starter_plan, stripe_catalog):
        stripe_catalog.Price.create.side_effect = [{"id": "price_m"}, StripeError("rate limited")]

        with pytest.raises(ProviderUnavailableError):
            CatalogSynchronizer(gateway).sync_plan(starter_plan.id, db_session)

        db_session.expire_all()
        plan = db_session.query(Plan).filter(Plan.id == starter_plan.id).one()
        assert plan.stripe_price_id_monthly == "price_m"
        assert plan.stripe_price_id_yearly is None

        # Retry only creates the missing yearly price
        stripe_catalog.Price.create.side_effect = [{"id": "price_y"}]
        plan = CatalogSynchronizer(gateway).sync_plan(starter_plan.id, db_session)
        assert plan.stripe_price_id_monthly == "price_m"
        assert plan.stripe_price_id_yearly == "price_y"

    @pytest.mark.high
    def test_sync_unknown_plan(self, db_session, gateway, stripe_catalog):
        with pytest.raises(PlanNotFoundError):
            CatalogSynchronizer(gateway).sync_plan("missing", db_session)

    @pytest.mark.high
    def test_sync_requires_configured_provider(self, db_session, starter_plan, mock_stripe):
        with pytest.raises(ProviderNotConfiguredError):
            CatalogSynchronizer(UnconfiguredStripeGateway()).sync_plan(starter_plan.id, db_session)
        mock_stripe.Product.search.assert_not_called()

    @pytest.mark.medium
    def test_sync_all_unconfigured_is_noop(self, db_session, starter_plan, mock_stripe):
        report = CatalogSynchronizer(UnconfiguredStripeGateway()).sync_all_plans(db_session)

        assert report.to_dict() == {"synced": [], "failed": [], "skipped": []}
        mock_stripe.Product.search.assert_not_called()

    @pytest.mark.critical
    def test_sync_all_reports_each_plan(self, db_session, gateway, synced_plans, stripe_catalog):
        starter, professional = synced_plans
        growth = create_plan(plan_data("growth", sort_order=3), db_session, sync_with_stripe=False)
        broken = create_plan(plan_data("broken", sort_order=4), db_session, sync_with_stripe=False)
        retired = create_plan(plan_data("retired", sort_order=5, is_active=False), db_session, sync_with_stripe=False)

        def create_product(**kwargs):
            if kwargs["metadata"]["plan_id"] == broken.id:
                raise StripeError("product rejected")
            return {"id": "prod_growth"}
        stripe_catalog.Product.create.side_effect = create_product

        report = CatalogSynchronizer(gateway).sync_all_plans(db_session)

        assert report.skipped == [starter.id, professional.id]
        assert report.synced == [growth.id]
        assert [f["plan_id"] for f in report.failed] == [broken.id]
        assert retired.id not in report.synced + report.skipped

        db_session.refresh(growth)
        assert growth.stripe_price_id_monthly == "price_prod_growth_monthly"
        assert growth.stripe_price_id_yearly == "price_prod_growth_yearly"

    @pytest.mark.high
    def test_create_plan_syncs_when_configured(self, db_session, gateway, stripe_catalog):
        plan = create_plan(plan_data(), db_session, gateway=gateway)

        assert plan.stripe_price_id_monthly is not None
        assert plan.stripe_price_id_yearly is not None

    @pytest.mark.high
    def test_create_plan_survives_sync_failure(self, db_session, gateway, mock_stripe):
        mock_stripe.Product.search.side_effect = StripeError("Stripe is down")

        plan = create_plan(plan_data(), db_session, gateway=gateway)

        assert plan.slug == "growth"
        assert plan.stripe_price_id_monthly is None
        assert db_session.query(Plan).count() == 1

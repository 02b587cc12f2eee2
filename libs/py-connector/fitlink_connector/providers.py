"""Static provider registry: OAuth endpoints, scopes and supported data types."""

from fitlink_normalize.schema import HealthDataType as T
from fitlink_normalize.schema import Provider

from .exceptions import InvalidProviderError
from .vendor_types import DeviceType, ProviderConfig

PROVIDER_CONFIGS: dict[Provider, ProviderConfig] = {
    Provider.STRAVA: ProviderConfig(
        id=Provider.STRAVA,
        name="Strava",
        description="Running, cycling, swimming and other activities",
        icon="Activity",
        color="#FC4C02",
        auth_url="https://www.strava.com/oauth/authorize",
        token_url="https://www.strava.com/oauth/token",
        revoke_url="https://www.strava.com/oauth/deauthorize",
        scopes=["read", "activity:read_all"],
        scope_separator=",",
        supports_pkce=True,
        data_types=[T.WORKOUT, T.DISTANCE, T.HEART_RATE, T.CALORIES, T.ELEVATION,
                    T.PACE, T.CADENCE],
        supports_webhooks=True,
        device_type=DeviceType.OTHER,
    ),
    Provider.GARMIN: ProviderConfig(
        id=Provider.GARMIN,
        name="Garmin Connect",
        description="Garmin watches and full fitness data",
        icon="Watch",
        color="#007CC3",
        auth_url="https://connect.garmin.com/oauth/authorize",
        token_url="https://connectapi.garmin.com/di-oauth2-service/oauth/token",
        scopes=["activities", "wellness", "sleep"],
        scope_separator=",",
        data_types=[T.HEART_RATE, T.STEPS, T.CALORIES, T.DISTANCE, T.SLEEP, T.WORKOUT,
                    T.HRV, T.STRESS_LEVEL, T.BODY_BATTERY, T.VO2MAX],
        supports_webhooks=True,
        device_type=DeviceType.SMARTWATCH,
    ),
    Provider.FITBIT: ProviderConfig(
        id=Provider.FITBIT,
        name="Fitbit",
        description="Fitbit trackers and Versa/Sense watches",
        icon="Activity",
        color="#00B0B9",
        auth_url="https://www.fitbit.com/oauth2/authorize",
        token_url="https://api.fitbit.com/oauth2/token",
        revoke_url="https://api.fitbit.com/oauth2/revoke",
        scopes=["activity", "heartrate", "sleep", "weight", "nutrition"],
        supports_pkce=True,
        extra_auth_params={"prompt": "consent"},
        data_types=[T.HEART_RATE, T.RESTING_HEART_RATE, T.STEPS, T.CALORIES, T.DISTANCE,
                    T.SLEEP, T.WEIGHT, T.ACTIVE_MINUTES, T.SPO2],
        supports_webhooks=True,
        device_type=DeviceType.FITNESS_TRACKER,
    ),
    Provider.APPLE_HEALTH: ProviderConfig(
        id=Provider.APPLE_HEALTH,
        name="Apple Health",
        description="Apple Watch and iPhone Health",
        icon="Heart",
        color="#FF3B30",
        scopes=["health_read"],
        data_types=[T.HEART_RATE, T.STEPS, T.CALORIES, T.DISTANCE, T.SLEEP, T.WORKOUT,
                    T.WEIGHT, T.BLOOD_PRESSURE, T.SPO2, T.HRV, T.VO2MAX],
        requires_app=True,
        platform="ios",
        device_type=DeviceType.SMARTWATCH,
    ),
    Provider.POLAR: ProviderConfig(
        id=Provider.POLAR,
        name="Polar Flow",
        description="Polar watches and sensors",
        icon="Heart",
        color="#E30613",
        auth_url="https://flow.polar.com/oauth2/authorization",
        token_url="https://polarremote.com/v2/oauth2/token",
        scopes=["accesslink.read_all"],
        data_types=[T.HEART_RATE, T.WORKOUT, T.CALORIES, T.DISTANCE, T.SLEEP, T.HRV],
        supports_webhooks=True,
        device_type=DeviceType.RUNNING_WATCH,
    ),
    Provider.WAHOO: ProviderConfig(
        id=Provider.WAHOO,
        name="Wahoo",
        description="Wahoo bike computers and sensors",
        icon="Bike",
        color="#2E3192",
        auth_url="https://api.wahooligan.com/oauth/authorize",
        token_url="https://api.wahooligan.com/oauth/token",
        scopes=["workouts_read", "power_read"],
        data_types=[T.WORKOUT, T.HEART_RATE, T.POWER, T.CADENCE, T.DISTANCE, T.CALORIES],
        supports_webhooks=True,
        device_type=DeviceType.BIKE_COMPUTER,
    ),
    Provider.WHOOP: ProviderConfig(
        id=Provider.WHOOP,
        name="WHOOP",
        description="Recovery, strain and sleep",
        icon="Activity",
        color="#000000",
        auth_url="https://api.prod.whoop.com/oauth/oauth2/auth",
        token_url="https://api.prod.whoop.com/oauth/oauth2/token",
        scopes=["offline", "read:recovery", "read:workout", "read:sleep"],
        data_types=[T.HEART_RATE, T.HRV, T.SLEEP, T.WORKOUT, T.STRESS_LEVEL, T.CALORIES],
        supports_webhooks=True,
        device_type=DeviceType.FITNESS_TRACKER,
    ),
    Provider.OURA: ProviderConfig(
        id=Provider.OURA,
        name="Oura Ring",
        description="Sleep, readiness and activity from the Oura ring",
        icon="Moon",
        color="#5E17EB",
        auth_url="https://cloud.ouraring.com/oauth/authorize",
        token_url="https://api.ouraring.com/oauth/token",
        revoke_url="https://api.ouraring.com/oauth/revoke",
        scopes=["daily", "personal", "session"],
        data_types=[T.HEART_RATE, T.HRV, T.SLEEP, T.TEMPERATURE, T.STEPS, T.CALORIES],
        supports_webhooks=True,
        device_type=DeviceType.OTHER,
    ),
    Provider.SUUNTO: ProviderConfig(
        id=Provider.SUUNTO,
        name="Suunto",
        description="Suunto outdoor and sports watches",
        icon="Watch",
        color="#FF3B3F",
        auth_url="https://cloudapi-oauth.suunto.com/oauth/authorize",
        token_url="https://cloudapi-oauth.suunto.com/oauth/token",
        scopes=["workout"],
        data_types=[T.WORKOUT, T.HEART_RATE, T.DISTANCE, T.ELEVATION, T.CALORIES],
        supports_webhooks=True,
        device_type=DeviceType.SMARTWATCH,
    ),
    Provider.COROS: ProviderConfig(
        id=Provider.COROS,
        name="COROS",
        description="COROS GPS sport watches",
        icon="Watch",
        color="#FF6B00",
        auth_url="https://open.coros.com/oauth2/authorize",
        token_url="https://open.coros.com/oauth2/accesstoken",
        scopes=["workouts:read"],
        data_types=[T.WORKOUT, T.HEART_RATE, T.DISTANCE, T.ELEVATION, T.PACE, T.CALORIES],
        supports_webhooks=True,
        device_type=DeviceType.RUNNING_WATCH,
    ),
    Provider.GOOGLE_FIT: ProviderConfig(
        id=Provider.GOOGLE_FIT,
        name="Google Fit",
        description="Google Fit and Android Health",
        icon="Activity",
        color="#4285F4",
        auth_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        revoke_url="https://oauth2.googleapis.com/revoke",
        scopes=[
            "https://www.googleapis.com/auth/fitness.activity.read",
            "https://www.googleapis.com/auth/fitness.heart_rate.read",
        ],
        supports_pkce=True,
        extra_auth_params={"access_type": "offline", "prompt": "consent"},
        data_types=[T.HEART_RATE, T.STEPS, T.CALORIES, T.DISTANCE, T.WORKOUT, T.WEIGHT],
        requires_app=True,
        platform="android",
        device_type=DeviceType.OTHER,
    ),
}


def get_provider_config(provider: Provider | str) -> ProviderConfig:
    """
    Look up a provider's registry entry.

    Raises:
        InvalidProviderError: If the provider is unknown
    """
    try:
        return PROVIDER_CONFIGS[Provider(provider)]
    except (ValueError, KeyError) as e:
        raise InvalidProviderError(f"Unknown provider: {provider}", provider=str(provider)) from e


def list_providers() -> list[ProviderConfig]:
    """All registered providers, in registry order."""
    return list(PROVIDER_CONFIGS.values())

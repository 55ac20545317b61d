import json
import os
import random
import time

import paho.mqtt.client as mqtt

MQTT_HOST = os.getenv("MQTT_HOST", "localhost")
MQTT_PORT = int(os.getenv("MQTT_PORT", "1883"))
TOPIC_PREFIX = os.getenv("TOPIC_PREFIX", "Sense")

SENSORS = int(os.getenv("SIM_SENSORS", "5"))
METER_GATEWAYS = int(os.getenv("SIM_METER_GATEWAYS", "2"))
METERS_PER_GATEWAY = int(os.getenv("SIM_METERS_PER_GATEWAY", "3"))

FAST_PERIOD = float(os.getenv("SIM_FAST_PERIOD", "5"))     # seconds between fast-device messages
SLOW_EVERY = int(os.getenv("SIM_SLOW_EVERY", "12"))        # slow devices report every Nth cycle

# Periodic heat excursion so temperature rules have something to fire on.
HEAT_PERIOD = int(os.getenv("HEAT_PERIOD", "600"))
HEAT_DURATION = int(os.getenv("HEAT_DURATION", "90"))

LOCAL_IP = os.getenv("SIM_LOCAL_IP", "192.168.1.50")


def pub(client, topic, payload):
    client.publish(topic, json.dumps(payload), qos=0, retain=False)


def in_window(t, period, duration):
    return (t % period) < duration


def make_sensor(uid, heat=False):
    """Single-device reading, mixed-case keys as real devices send them."""
    temp = 24.0 + (30.0 if heat else 0.0) + random.uniform(-0.5, 0.5)
    return {
        "DeviceUID": uid,
        "Temperature": round(temp, 2),
        "Humidity": round(random.uniform(40.0, 60.0), 1),
        "FlowRate": round(random.uniform(10.0, 14.0), 2),
        "LocalIP": LOCAL_IP,
    }


def make_three_phase(uid):
    return {
        "deviceuid": uid,
        "TempR": round(random.uniform(35.0, 40.0), 1),
        "TempY": round(random.uniform(35.0, 40.0), 1),
        "TempB": round(random.uniform(35.0, 40.0), 1),
        "Status": "ok",
    }


def make_meter_gateway(gateway, totals):
    """Container message: one Meter_* sub-object per flow meter."""
    payload = {"Gateway": gateway, "LocalIP": LOCAL_IP}
    for i in range(1, METERS_PER_GATEWAY + 1):
        uid = f"{gateway}-M{i}"
        totals[uid] = totals.get(uid, 0.0) + random.uniform(0.5, 2.0)
        payload[f"Meter_{i}"] = {
            "DeviceUID": uid,
            "Flow": round(random.uniform(1.0, 5.0), 2),
            "Pressure": round(random.uniform(2.0, 3.5), 2),
            "Totalizer": round(totals[uid], 2),
        }
    return payload


def main():
    client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)
    client.connect(MQTT_HOST, MQTT_PORT, keepalive=60)
    client.loop_start()

    sensors = [f"SN{i:04d}" for i in range(1, SENSORS + 1)]
    gateways = [f"GW{i:02d}" for i in range(1, METER_GATEWAYS + 1)]
    totals = {}

    start = time.time()
    cycle = 0

    while True:
        elapsed = int(time.time() - start)
        heat = in_window(elapsed, HEAT_PERIOD, HEAT_DURATION)

        # First sensor is hot during the excursion window; the rest stay nominal.
        for idx, uid in enumerate(sensors):
            pub(client, f"{TOPIC_PREFIX}/{uid}", make_sensor(uid, heat=heat and idx == 0))

        pub(client, f"{TOPIC_PREFIX}/PH0001", make_three_phase("PH0001"))

        # Meters report slowly, exercising the 60 s debounce interval.
        if cycle % SLOW_EVERY == 0:
            for gw in gateways:
                pub(client, f"{TOPIC_PREFIX}/{gw}", make_meter_gateway(gw, totals))

        cycle += 1
        time.sleep(FAST_PERIOD)


if __name__ == "__main__":
    main()

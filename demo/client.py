import asyncio
import sys

from dotenv import load_dotenv

from jokepay_x402.agent import AgentError, PaymentAgent, format_report
from jokepay_x402.authorizer import AuthorizerError, build_authorizer
from jokepay_x402.config import AgentConfig

load_dotenv()

config = AgentConfig.from_env()
memo = " ".join(sys.argv[1:]) or "tell me a joke"


async def main() -> int:
    try:
        authorizer = build_authorizer(config)
    except AuthorizerError as exc:
        print("Authorizer failed:", exc)
        return 1
    agent = PaymentAgent(config.api_url, authorizer, timeout=config.timeout, memo=memo)
    try:
        result = await agent.run()
    except AgentError as exc:
        print("Agent failed:", exc)
        print("Body:", exc.body)
        return 1
    except AuthorizerError as exc:
        print("Authorizer failed:", exc)
        return 1
    finally:
        await agent.aclose()
    print(format_report(result))
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))

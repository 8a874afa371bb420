from fastapi import APIRouter, Depends

from groundwave.api import deps
from groundwave.api.routes import auth, break_glass, extension, health, pow, security, setup, webauthn

router = APIRouter()

_ceremony_deps = [Depends(deps.rate_limit), Depends(deps.verify_csrf)]

router.include_router(pow.router, tags=["PoW"], dependencies=[Depends(deps.rate_limit)])
router.include_router(auth.router, tags=["Auth"], dependencies=[Depends(deps.verify_csrf)])
router.include_router(setup.router, tags=["Setup"], dependencies=_ceremony_deps)
router.include_router(webauthn.router, tags=["WebAuthn"], dependencies=_ceremony_deps)
router.include_router(break_glass.router, tags=["BreakGlass"], dependencies=_ceremony_deps)
router.include_router(health.router, tags=["Health"], dependencies=[Depends(deps.verify_csrf)])
router.include_router(security.router, tags=["Security"], dependencies=[Depends(deps.verify_csrf)])
router.include_router(extension.router, tags=["Extension"])

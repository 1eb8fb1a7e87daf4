"""Project templates used to scaffold new workspaces."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from cloudide.config import settings
from cloudide.errors import CreateFailed
from cloudide.models.workspace import ServerConfig

if TYPE_CHECKING:
    from cloudide.runtime.files import ContainerFiles

logger = structlog.get_logger()

DEFAULT_TEMPLATE = "blank"


@dataclass(frozen=True)
class ProjectTemplate:
    """Files, dependencies and dev server settings for one project kind."""

    name: str
    server_config: ServerConfig
    files: dict[str, str] = field(default_factory=dict)
    package_json: dict[str, Any] | None = None

    @property
    def needs_install(self) -> bool:
        return self.package_json is not None

    def rendered_files(self, project_name: str) -> dict[str, str]:
        rendered = {
            path: body.replace("{{name}}", project_name) for path, body in self.files.items()
        }
        if self.package_json is not None:
            package = dict(self.package_json)
            package["name"] = _package_name(project_name)
            rendered["package.json"] = json.dumps(package, indent=2) + "\n"
        return rendered


def _package_name(project_name: str) -> str:
    slug = "-".join(project_name.lower().split())
    return "".join(c for c in slug if c.isalnum() or c in "-_.") or "workspace"


_VITE_REACT = ProjectTemplate(
    name="react-vite",
    server_config=ServerConfig(
        type="vite", default_port=5173, dev_command="npm run dev -- --host 0.0.0.0"
    ),
    package_json={
        "version": "0.1.0",
        "private": True,
        "type": "module",
        "scripts": {"dev": "vite", "build": "vite build", "preview": "vite preview"},
        "dependencies": {"react": "^18.3.1", "react-dom": "^18.3.1"},
        "devDependencies": {
            "@types/react": "^18.3.3",
            "@types/react-dom": "^18.3.0",
            "@vitejs/plugin-react": "^4.3.1",
            "vite": "^5.4.0",
        },
    },
    files={
        "vite.config.js": (
            "import { defineConfig } from 'vite'\n"
            "import react from '@vitejs/plugin-react'\n\n"
            "export default defineConfig({\n"
            "  plugins: [react()],\n"
            "  server: {\n"
            "    host: '0.0.0.0',\n"
            "    port: 5173\n"
            "  }\n"
            "})\n"
        ),
        "index.html": (
            "<!doctype html>\n"
            '<html lang="en">\n'
            "  <head>\n"
            '    <meta charset="UTF-8" />\n'
            '    <meta name="viewport" content="width=device-width, initial-scale=1.0" />\n'
            "    <title>{{name}}</title>\n"
            "  </head>\n"
            "  <body>\n"
            '    <div id="root"></div>\n'
            '    <script type="module" src="/src/main.jsx"></script>\n'
            "  </body>\n"
            "</html>\n"
        ),
        "src/main.jsx": (
            "import React from 'react'\n"
            "import ReactDOM from 'react-dom/client'\n"
            "import App from './App.jsx'\n"
            "import './index.css'\n\n"
            "ReactDOM.createRoot(document.getElementById('root')).render(\n"
            "  <React.StrictMode>\n"
            "    <App />\n"
            "  </React.StrictMode>,\n"
            ")\n"
        ),
        "src/App.jsx": (
            "import { useState } from 'react'\n\n"
            "function App() {\n"
            "  const [count, setCount] = useState(0)\n\n"
            "  return (\n"
            "    <main>\n"
            "      <h1>{{name}}</h1>\n"
            "      <button onClick={() => setCount((c) => c + 1)}>count is {count}</button>\n"
            "    </main>\n"
            "  )\n"
            "}\n\n"
            "export default App\n"
        ),
        "src/index.css": (
            "body {\n"
            "  margin: 0;\n"
            "  font-family: system-ui, sans-serif;\n"
            "  display: flex;\n"
            "  place-items: center;\n"
            "  min-height: 100vh;\n"
            "}\n"
        ),
    },
)

_NEXTJS = ProjectTemplate(
    name="nextjs",
    server_config=ServerConfig(type="nextjs", default_port=3000, dev_command="npm run dev"),
    package_json={
        "version": "0.1.0",
        "private": True,
        "scripts": {"dev": "next dev -H 0.0.0.0", "build": "next build", "start": "next start"},
        "dependencies": {"next": "^14.2.5", "react": "^18.3.1", "react-dom": "^18.3.1"},
        "devDependencies": {
            "@types/node": "^20.14.0",
            "@types/react": "^18.3.3",
            "typescript": "^5.5.0",
        },
    },
    files={
        "tsconfig.json": json.dumps(
            {
                "compilerOptions": {
                    "lib": ["dom", "dom.iterable", "esnext"],
                    "allowJs": True,
                    "skipLibCheck": True,
                    "strict": True,
                    "noEmit": True,
                    "esModuleInterop": True,
                    "module": "esnext",
                    "moduleResolution": "bundler",
                    "resolveJsonModule": True,
                    "isolatedModules": True,
                    "jsx": "preserve",
                    "incremental": True,
                    "plugins": [{"name": "next"}],
                    "paths": {"@/*": ["./src/*"]},
                },
                "include": ["next-env.d.ts", "**/*.ts", "**/*.tsx", ".next/types/**/*.ts"],
                "exclude": ["node_modules"],
            },
            indent=2,
        )
        + "\n",
        "next.config.js": (
            "/** @type {import('next').NextConfig} */\n"
            "const nextConfig = {};\n\n"
            "module.exports = nextConfig;\n"
        ),
        "src/app/layout.tsx": (
            "export const metadata = { title: '{{name}}' };\n\n"
            "export default function RootLayout({ children }: { children: React.ReactNode }) {\n"
            "  return (\n"
            '    <html lang="en">\n'
            "      <body>{children}</body>\n"
            "    </html>\n"
            "  );\n"
            "}\n"
        ),
        "src/app/page.tsx": (
            "export default function Home() {\n"
            "  return (\n"
            "    <main>\n"
            "      <h1>{{name}}</h1>\n"
            "      <p>Edit src/app/page.tsx to get started.</p>\n"
            "    </main>\n"
            "  );\n"
            "}\n"
        ),
    },
)

_NODE_EXPRESS = ProjectTemplate(
    name="node-express",
    server_config=ServerConfig(type="express", default_port=3000, dev_command="npm run dev"),
    package_json={
        "version": "0.1.0",
        "private": True,
        "main": "src/index.js",
        "scripts": {"dev": "nodemon src/index.js", "start": "node src/index.js"},
        "dependencies": {"cors": "^2.8.5", "dotenv": "^16.4.5", "express": "^4.19.2"},
        "devDependencies": {"nodemon": "^3.1.4"},
    },
    files={
        "src/index.js": (
            "const express = require('express');\n"
            "const cors = require('cors');\n"
            "require('dotenv').config();\n\n"
            "const app = express();\n"
            "const PORT = process.env.PORT || 3000;\n\n"
            "app.use(cors());\n"
            "app.use(express.json());\n\n"
            "app.get('/', (req, res) => {\n"
            "  res.json({ message: 'Welcome to {{name}}' });\n"
            "});\n\n"
            "app.get('/api/health', (req, res) => {\n"
            "  res.json({ status: 'OK', timestamp: new Date().toISOString() });\n"
            "});\n\n"
            "app.listen(PORT, '0.0.0.0', () => {\n"
            "  console.log(`Server listening on http://localhost:${PORT}`);\n"
            "});\n"
        ),
        ".env.example": "PORT=3000\n",
    },
)

_VANILLA_JS = ProjectTemplate(
    name="vanilla-js",
    server_config=ServerConfig(
        type="vite", default_port=5173, dev_command="npm run dev -- --host 0.0.0.0"
    ),
    package_json={
        "version": "0.1.0",
        "private": True,
        "type": "module",
        "scripts": {"dev": "vite", "build": "vite build"},
        "devDependencies": {"vite": "^5.4.0"},
    },
    files={
        "index.html": (
            "<!DOCTYPE html>\n"
            '<html lang="en">\n'
            "<head>\n"
            '  <meta charset="UTF-8">\n'
            '  <meta name="viewport" content="width=device-width, initial-scale=1.0">\n'
            "  <title>{{name}}</title>\n"
            '  <link rel="stylesheet" href="./src/style.css">\n'
            "</head>\n"
            "<body>\n"
            '  <div id="app">\n'
            "    <h1>{{name}}</h1>\n"
            '    <button id="clickBtn">Click me!</button>\n'
            '    <p id="counter">Clicks: 0</p>\n'
            "  </div>\n"
            '  <script type="module" src="./src/main.js"></script>\n'
            "</body>\n"
            "</html>\n"
        ),
        "src/main.js": (
            "let clickCount = 0;\n\n"
            "document.getElementById('clickBtn').addEventListener('click', () => {\n"
            "  clickCount++;\n"
            "  document.getElementById('counter').textContent = `Clicks: ${clickCount}`;\n"
            "});\n"
        ),
        "src/style.css": (
            "body {\n"
            "  font-family: system-ui, sans-serif;\n"
            "  display: flex;\n"
            "  justify-content: center;\n"
            "  align-items: center;\n"
            "  min-height: 100vh;\n"
            "}\n"
        ),
    },
)

_BLANK = ProjectTemplate(
    name="blank",
    server_config=ServerConfig(type="none", default_port=5173, dev_command=None),
    files={"README.md": "# {{name}}\n\nStart building here.\n"},
)

TEMPLATES: dict[str, ProjectTemplate] = {
    template.name: template
    for template in (_VITE_REACT, _NEXTJS, _NODE_EXPRESS, _VANILLA_JS, _BLANK)
}

# Older template names that map onto the current set
TEMPLATE_ALIASES = {
    "fullstack-nextjs": "nextjs",
    "vite": "react-vite",
    "cpp-blank": "blank",
}


def get_template(name: str | None) -> ProjectTemplate:
    """Look up a template; unknown names fall back to the blank project."""
    key = TEMPLATE_ALIASES.get(name or "", name or DEFAULT_TEMPLATE)
    template = TEMPLATES.get(key)
    if template is None:
        logger.warning("Unknown template, using blank project", template=name)
        return TEMPLATES[DEFAULT_TEMPLATE]
    return template


async def scaffold(files: ContainerFiles, template: ProjectTemplate, project_name: str) -> None:
    """Write the template into the workspace and install its dependencies.

    Raises:
        CreateFailed: if no project files are present afterwards
    """
    rendered = template.rendered_files(project_name)
    for path, content in rendered.items():
        await files.write(path, content)

    if template.needs_install:
        logger.info("Installing template dependencies", template=template.name)
        await files.channel.execute(
            files.container_id,
            ["npm", "install", "--no-audit", "--no-fund"],
            working_dir=files.base_dir,
            timeout=settings.project_init_timeout,
            check=True,
        )

    if not await files.exists(next(iter(rendered))):
        raise CreateFailed(f"No project files generated for template {template.name}")

    logger.info("Template scaffolded", template=template.name, files=len(template.files))
